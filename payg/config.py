"""
Configuration module for payg

Contains the PaygConfig dataclass that holds all tunable parameters of the
coordinator, plus the loaders that merge a JSON config file with PAYG_*
environment variables.

Example config file:
    {
      "network_endpoint": "https://polygon-rpc.example",
      "network_query_url": "https://api.example/network",
      "state_channel_address": "0x...",
      "staking_allocation_address": "0x...",
      "indexer": "0x..."
    }
"""

import json
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Optional

ENV_PREFIX = "PAYG_"

# Keys never echoed back by to_dict()
SECRET_CONFIG_KEYS = frozenset({
    'controller_private_key',
})

# Type mapping for config fields (for coercion and validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'db_path': str,
    'log_level': str,
    'network_endpoint': str,
    'network_query_url': str,
    'state_channel_address': str,
    'staking_allocation_address': str,
    'consumer_host_address': str,
    'controller_private_key': str,
    'indexer': str,
    'sync_interval_seconds': int,
    'sync_batch_size': int,
    'event_poll_interval_seconds': int,
    'event_start_block': int,
    'event_block_range': int,
    'query_timeout_seconds': int,
    'chain_call_timeout_seconds': int,
    'tx_confirmations': int,
    'tx_max_retries': int,
    'tx_backoff_seconds': float,
    'tx_receipt_timeout_seconds': int,
    'tx_gas_limit': int,
    'checkpoint_threshold': int,
    'auto_reduce_allocation': bool,
    'reduce_interval_seconds': int,
    'channel_reward_threshold': int,
    'reward_bypass_seconds': int,
    'reward_collect_interval_seconds': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'sync_interval_seconds': (5, 3600),
    'sync_batch_size': (1, 100),
    'event_poll_interval_seconds': (1, 600),
    'event_start_block': (0, 2 ** 63),
    'event_block_range': (1, 100000),
    'query_timeout_seconds': (1, 300),
    'chain_call_timeout_seconds': (1, 300),
    'tx_confirmations': (0, 100),
    'tx_max_retries': (0, 10),
    'tx_backoff_seconds': (0.0, 600.0),
    'tx_receipt_timeout_seconds': (10, 3600),
    'tx_gas_limit': (21000, 30000000),
    'checkpoint_threshold': (0, 10 ** 9),
    'reduce_interval_seconds': (10, 86400),
    'channel_reward_threshold': (0, 2 ** 255),
    'reward_bypass_seconds': (0, 30 * 86400),
    'reward_collect_interval_seconds': (60, 7 * 86400),
}

LOG_LEVEL_NAMES = frozenset({'debug', 'info', 'warn', 'warning', 'error'})


@dataclass
class PaygConfig:
    """
    Configuration container for the payg coordinator.

    All values can be set from the JSON config file or PAYG_<FIELD>
    environment variables (environment wins).
    """

    # Database path
    db_path: str = '~/.payg/payg.db'
    log_level: str = 'info'

    # Endpoints
    network_endpoint: str = ''        # JSON-RPC endpoint of the settlement chain
    network_query_url: str = ''       # GraphQL endpoint of the network indexer
    state_channel_address: str = ''
    staking_allocation_address: str = ''
    consumer_host_address: str = ''   # empty = agent lookup disabled

    # Identity
    controller_private_key: str = ''  # signs settlement transactions
    indexer: str = ''                 # seeds the stored indexer identity

    # Sync scheduler
    sync_interval_seconds: int = 60
    sync_batch_size: int = 10

    # Event subscriber
    event_poll_interval_seconds: int = 5
    event_start_block: int = 0        # 0 = start from the current head
    event_block_range: int = 2000     # max blocks per log query

    # Timeouts
    query_timeout_seconds: int = 20
    chain_call_timeout_seconds: int = 15

    # Transactions
    tx_confirmations: int = 10
    tx_max_retries: int = 3
    tx_backoff_seconds: float = 2.0   # doubled on each retry
    tx_receipt_timeout_seconds: int = 300
    tx_gas_limit: int = 1000000

    # Ledger auto-checkpoint (price units of unclaimed spend, 0 = disabled)
    checkpoint_threshold: int = 0

    # Reward reducer
    auto_reduce_allocation: bool = True
    reduce_interval_seconds: int = 300   # 5 minutes

    # Channel reward collector
    channel_reward_threshold: int = 0
    reward_bypass_seconds: int = 259200  # 3 days
    reward_collect_interval_seconds: int = 86400

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> 'PaygConfig':
        """Build a config from a mapping, ignoring unknown keys."""
        config = cls()
        for key, value in values.items():
            if key in CONFIG_FIELD_TYPES:
                config._apply_override(key, value)
        return config

    def _apply_override(self, key: str, value: Any) -> None:
        """Apply a single override with type conversion."""
        field_type = CONFIG_FIELD_TYPES.get(key, str)
        if field_type == bool:
            if isinstance(value, bool):
                typed_value = value
            else:
                typed_value = str(value).strip().lower() in ('true', '1', 'yes', 'on')
        elif field_type == int:
            typed_value = int(value)
        elif field_type == float:
            typed_value = float(value)
        else:
            typed_value = str(value)
        setattr(self, key, typed_value)

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> None:
        """Overlay PAYG_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        for key in CONFIG_FIELD_TYPES:
            env_key = ENV_PREFIX + key.upper()
            if env_key in environ:
                self._apply_override(key, environ[env_key])

    def validate(self) -> List[str]:
        """Return a list of validation errors (empty when valid)."""
        errors = []
        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if not (min_val <= value <= max_val):
                errors.append(f"{key}={value} out of range [{min_val}, {max_val}]")
        if self.log_level not in LOG_LEVEL_NAMES:
            errors.append(f"log_level must be one of {sorted(LOG_LEVEL_NAMES)}")
        if not self.network_endpoint:
            errors.append("network_endpoint is required")
        if not self.network_query_url:
            errors.append("network_query_url is required")
        if not self.state_channel_address:
            errors.append("state_channel_address is required")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in SECRET_CONFIG_KEYS:
            if data.get(key):
                data[key] = '***'
        return data


def load_config(path: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> PaygConfig:
    """
    Load configuration from an optional JSON file and the environment.

    Args:
        path: JSON config file; defaults to $PAYG_CONFIG when unset
        environ: environment mapping (os.environ by default)

    Raises:
        ValueError: if a value cannot be converted to its field type
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(ENV_PREFIX + 'CONFIG')
    values: Dict[str, Any] = {}
    if path:
        with open(os.path.expanduser(path)) as f:
            values = json.load(f)
    config = PaygConfig.from_dict(values)
    config.apply_env(environ)
    return config

