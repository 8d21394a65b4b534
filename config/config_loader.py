import os
from dataclasses import dataclass
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).with_name('config.yaml')
DEFAULT_ENDPOINT = 'sandbox-invest-public-api.tinkoff.ru:443'
DEFAULT_APP_NAME = 'invest-api-python-bots'


class SectionProxy(Mapping):
    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if isinstance(value, dict):
            return SectionProxy(value)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return value

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv('INVEST_CONFIG_PATH') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and node.startswith('${') and node.endswith('}'):
            env_key = node[2:-1]
            return os.getenv(env_key, node)
        return node

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def section(self, name: str) -> Dict[str, Any]:
        """Plain dict copy of a top-level section, empty when absent."""
        value = self._data.get(name)
        return dict(value) if isinstance(value, dict) else {}

    def reload(self) -> None:
        self._data = self._load_config()


@dataclass
class ClientConfig:
    """Connection settings consumed by the RPC gateway client and the stream."""

    endpoint: str = DEFAULT_ENDPOINT
    token: str = ''
    app_name: str = DEFAULT_APP_NAME
    account_id: str = ''
    max_attempts: int = 5
    backoff_s: float = 1.0
    disable_all_retry: bool = False
    request_timeout_s: float = 15.0

    @property
    def host(self) -> str:
        return self.endpoint.split(':', 1)[0]

    @property
    def is_sandbox(self) -> bool:
        return self.endpoint.startswith('sandbox')

    @classmethod
    def from_mapping(cls, data: Optional[Mapping]) -> 'ClientConfig':
        data = dict(data or {})
        retry = dict(data.get('retry') or {})
        token = _resolved(data.get('token'))
        return cls(
            endpoint=data.get('endpoint') or DEFAULT_ENDPOINT,
            token=token,
            app_name=data.get('app_name') or DEFAULT_APP_NAME,
            account_id=_resolved(data.get('account_id')),
            max_attempts=int(retry.get('max_attempts', 5)),
            backoff_s=float(retry.get('backoff_s', 1.0)),
            disable_all_retry=bool(retry.get('disable_all_retry', False)),
            request_timeout_s=float(data.get('request_timeout_s', 15.0)),
        )


def _resolved(value: Any) -> str:
    """Empty string for a missing value or an unresolved ${ENV} placeholder."""
    value = '' if value is None else str(value)
    return '' if value.startswith('${') else value


config = Config()


def load_client_config(source: Optional[Config] = None) -> ClientConfig:
    source = source or config
    return ClientConfig.from_mapping(source.section('client'))
