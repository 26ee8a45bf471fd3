#!/usr/bin/env python3
"""
Configuration Manager for the Pool Keeper

Supports multiple network profiles with:
1. Environment variable substitution (${VAR} patterns)
2. .env loading for secrets (operator key, RPC API keys, webhooks)
3. Configuration validation
4. Global monitoring/default sections shared by every profile
"""

import os
import json
import re
from typing import Dict, Any, List, Optional
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent.parent

# look for .env file in the project root
load_dotenv(PROJECT_ROOT / '.env')

ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{40}$')
PRIVATE_KEY_PATTERN = re.compile(r'^(0x)?[0-9a-fA-F]{64}$')

MONITORING_DEFAULTS = {
    'block_lag': 5,
    'max_block_range': 100,
    'poll_interval_seconds': 5,
    'max_retries': 3,
    'retry_base_delay': 1.0,
    'retry_max_delay': 10.0,
    'max_retry_seconds': 60.0,
    'max_workers': 4,
    'sweep_timeout_seconds': 120.0,
    'pool_page_size': 50,
    'receipt_timeout_seconds': 120,
    'gas_multiplier_percent': 120,
    'shutdown_timeout_seconds': 30,
}

DEFAULTS = {
    'scan_interval_minutes': 5,
    'reminder_window_hours': 24,
    'request_timeout_seconds': 15,
}


class ConfigManager:
    """Configuration manager supporting multiple network profiles"""

    def __init__(self, config_file: Optional[str] = None, config_name_override: Optional[str] = None):
        self.config_file = config_file or "config.json"
        self._config_data = None
        self._active_config_name = None
        self._active_config = None
        self._config_name_override = config_name_override
        self._load_config()
        self._load_active_config()

    def _config_path(self) -> Path:
        path = Path(self.config_file)
        if path.is_absolute():
            return path
        return PROJECT_ROOT / path

    def _load_config(self):
        """Load configuration from JSON file"""
        config_path = self._config_path()

        try:
            with open(config_path, 'r') as f:
                content = f.read()
                # substitute environment variables
                content = self._substitute_env_vars(content)
                self._config_data = json.loads(content)
        except FileNotFoundError:
            raise FileNotFoundError(f"Config file {config_path} not found")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {config_path}: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ${VAR} patterns with environment variables"""
        def replace_var(match):
            var_name = match.group(1)
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ValueError(f"Environment variable {var_name} is not set")
            return env_value

        # pattern to match ${VAR_NAME}
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)\}'
        return re.sub(pattern, replace_var, content)

    def _load_active_config(self):
        """Load the active configuration based on override, ACTIVE_CONFIG env var, or default"""
        # check for config name override first (from CLI flag)
        if self._config_name_override:
            self._active_config_name = self._config_name_override
        else:
            # fallback to environment variable
            self._active_config_name = os.getenv('ACTIVE_CONFIG')

        if not self._active_config_name:
            # try to use the first available config as default
            configs = self.get_available_configs()
            if configs:
                self._active_config_name = list(configs.keys())[0]
                print(f"Warning: ACTIVE_CONFIG not set, using first available config: {self._active_config_name}")
            else:
                raise ValueError("No configurations available and ACTIVE_CONFIG not set")

        if self._active_config_name not in self.get_available_configs():
            available = list(self.get_available_configs().keys())
            raise ValueError(f"Active config '{self._active_config_name}' not found. Available: {available}")

        self._active_config = self.get_available_configs()[self._active_config_name]

    def get_available_configs(self) -> Dict[str, Any]:
        """Get all available configurations"""
        return self._config_data.get("configs", {})

    def get_active_config_name(self) -> str:
        """Get the name of the active configuration"""
        return self._active_config_name

    def list_configs(self) -> Dict[str, str]:
        """List all available configurations with display names"""
        configs = {}
        for name, config in self.get_available_configs().items():
            display_name = config.get('display_name', name)
            configs[name] = display_name
        return configs

    def validate_config(self, config_name: Optional[str] = None) -> Dict[str, Any]:
        """Validate a configuration and return validation results"""
        config = self.get_available_configs().get(config_name or self._active_config_name)

        if not config:
            return {"valid": False, "errors": ["Configuration not found"], "warnings": [],
                    "config_name": config_name or self._active_config_name}

        errors = []
        warnings = []

        for field in ['factory_contract', 'operator_private_key']:
            if not config.get(field):
                errors.append(f"Missing required field: {field}")

        def _is_http_url(s: str) -> bool:
            return isinstance(s, str) and s.startswith(('http://', 'https://'))

        # RPC: either rpc_urls (list) or rpc_url (string) must be present
        rpc_urls = config.get('rpc_urls')
        rpc_url = config.get('rpc_url')
        if rpc_urls is not None:
            if not isinstance(rpc_urls, list) or not rpc_urls or not all(_is_http_url(u) for u in rpc_urls):
                errors.append("rpc_urls must be a non-empty list of HTTP/HTTPS URLs")
        elif rpc_url is not None:
            if not _is_http_url(rpc_url):
                errors.append("rpc_url must be a valid HTTP/HTTPS URL")
        else:
            errors.append("Missing required field: rpc_url or rpc_urls")

        contract = config.get('factory_contract')
        if contract and not ADDRESS_PATTERN.match(str(contract)):
            errors.append("factory_contract must be a valid Ethereum address (0x...)")

        key = config.get('operator_private_key')
        if key and not PRIVATE_KEY_PATTERN.match(str(key)):
            errors.append("operator_private_key must be 32 bytes of hex")

        for field in ['scan_interval_minutes', 'reminder_window_hours', 'max_retry_attempts']:
            if field in config:
                value = config[field]
                if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                    errors.append(f"{field} must be a positive number")

        if 'chain_id' in config and not isinstance(config['chain_id'], int):
            errors.append("chain_id must be an integer")

        for kind, webhook in (config.get('discord_webhooks') or {}).items():
            if webhook and webhook != "N/A" and not webhook.startswith('https://discord.com/api/webhooks/'):
                warnings.append(f"discord_webhooks.{kind} should be a Discord webhook URL")

        explorer = config.get('explorer_tx_url')
        if explorer and '{tx_hash}' not in explorer:
            warnings.append("explorer_tx_url should contain a {tx_hash} placeholder")

        return {
            "valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings,
            "config_name": config_name or self._active_config_name
        }

    # configuration getters using active config

    def get_display_name(self) -> str:
        """Get display name for active configuration"""
        return self._active_config.get('display_name', self._active_config_name)

    def get_chain_id(self) -> Optional[int]:
        """Get chain ID (None lets the node report it)"""
        return self._active_config.get('chain_id')

    def get_rpc_urls(self) -> List[str]:
        """Get list of RPC URLs in preference order"""
        urls = self._active_config.get('rpc_urls')
        if isinstance(urls, list) and urls:
            return urls
        url = self._active_config.get('rpc_url')
        if isinstance(url, str) and url:
            return [url]
        raise ValueError("No RPC URL(s) configured")

    def get_factory_contract(self) -> str:
        """Get pool factory contract address"""
        return self._active_config['factory_contract']

    def get_operator_private_key(self) -> Optional[str]:
        """Get the operator key used to sign payout transactions"""
        return self._active_config.get('operator_private_key')

    def get_rpc_preference_reset_minutes(self) -> int:
        """Get preference reset interval (minutes) for RPC selection (default 60)"""
        try:
            return int(self._active_config.get('rpc_preference_reset_minutes', 60))
        except (TypeError, ValueError):
            return 60

    def get_discord_webhooks(self) -> Dict[str, str]:
        """Get Discord webhook URLs by notice kind (payouts, reminders, alerts)"""
        webhooks = self._active_config.get('discord_webhooks') or {}
        return {kind: url for kind, url in webhooks.items() if url and url != "N/A"}

    def get_explorer_tx_url(self) -> Optional[str]:
        """Get block explorer transaction URL template"""
        return self._active_config.get('explorer_tx_url')

    # defaults and monitoring config

    def get_defaults(self) -> Dict[str, Any]:
        """Get default values"""
        return self._config_data.get("defaults", {})

    def get_monitoring_config(self) -> Dict[str, Any]:
        """Get monitoring configuration"""
        return self._config_data.get("monitoring", {})

    def _monitoring_value(self, key: str):
        return self.get_monitoring_config().get(key, MONITORING_DEFAULTS[key])

    def _profile_or_default(self, key: str):
        if key in self._active_config:
            return self._active_config[key]
        return self.get_defaults().get(key, DEFAULTS[key])

    def get_scan_interval_minutes(self) -> float:
        """Get interval between full decision sweeps"""
        return self._profile_or_default('scan_interval_minutes')

    def get_reminder_window_hours(self) -> float:
        """Get how long before the payout time reminders start"""
        return self._profile_or_default('reminder_window_hours')

    def get_request_timeout(self) -> int:
        """Get HTTP timeout for a single RPC request"""
        return self._profile_or_default('request_timeout_seconds')

    def get_max_retries(self) -> int:
        """Get maximum number of attempts per remote call"""
        if 'max_retry_attempts' in self._active_config:
            return int(self._active_config['max_retry_attempts'])
        return int(self._monitoring_value('max_retries'))

    def get_retry_base_delay(self) -> float:
        return float(self._monitoring_value('retry_base_delay'))

    def get_retry_max_delay(self) -> float:
        return float(self._monitoring_value('retry_max_delay'))

    def get_max_retry_seconds(self) -> float:
        return float(self._monitoring_value('max_retry_seconds'))

    def get_block_lag(self) -> int:
        """Get number of blocks to stay behind the chain tip"""
        return int(self._monitoring_value('block_lag'))

    def get_max_block_range(self) -> int:
        """Get maximum blocks scanned per window"""
        return int(self._monitoring_value('max_block_range'))

    def get_poll_interval_seconds(self) -> float:
        """Get event polling interval"""
        return float(self._monitoring_value('poll_interval_seconds'))

    def get_max_workers(self) -> int:
        return int(self._monitoring_value('max_workers'))

    def get_sweep_timeout(self) -> float:
        return float(self._monitoring_value('sweep_timeout_seconds'))

    def get_pool_page_size(self) -> int:
        return int(self._monitoring_value('pool_page_size'))

    def get_receipt_timeout(self) -> float:
        return float(self._monitoring_value('receipt_timeout_seconds'))

    def get_gas_multiplier_percent(self) -> int:
        return int(self._monitoring_value('gas_multiplier_percent'))

    def get_shutdown_timeout(self) -> float:
        return float(self._monitoring_value('shutdown_timeout_seconds'))


# Global configuration manager instance
_config_manager_instance = None

def get_config_manager() -> ConfigManager:
    """
    Get the global configuration manager instance (singleton pattern)
    """
    global _config_manager_instance

    if _config_manager_instance is None:
        _config_manager_instance = ConfigManager()

    return _config_manager_instance

def reset_config_manager_instance(config_name_override: Optional[str] = None,
                                  config_file: Optional[str] = None) -> ConfigManager:
    """
    Reset the global configuration manager instance with optional config override
    """
    global _config_manager_instance
    _config_manager_instance = ConfigManager(config_file=config_file, config_name_override=config_name_override)
    return _config_manager_instance
