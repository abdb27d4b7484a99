"""
Runtime configuration, read from a YAML file and the environment.
"""
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_TOKEN_LIST = "https://tokens.coingecko.com/uniswap/all.json"


@dataclass
class CrispConfig:
    ipfs_gateway: str = "https://ipfs.io/ipfs/"
    token_list_url: str = DEFAULT_TOKEN_LIST
    http_timeout: float = 5.0
    http_retries: int = 2
    http_backoff: float = 0.2
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'CrispConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**data)


_ENV = {
    'CRISP_IPFS_GATEWAY': ('ipfs_gateway', str),
    'CRISP_TOKEN_LIST': ('token_list_url', str),
    'CRISP_HTTP_TIMEOUT': ('http_timeout', float),
    'CRISP_DEBUG': ('debug', lambda v: v.strip().lower() not in ('', '0', 'false', 'no')),
}


def load_config(path: Optional[str] = None, environ: Optional[dict] = None) -> CrispConfig:
    """Loads the YAML file at ``path`` (or ``$CRISP_CONFIG``), then applies environment overrides."""
    env = os.environ if environ is None else environ
    path = path or env.get('CRISP_CONFIG')
    data = {}
    if path:
        raw = yaml.safe_load(Path(path).read_text(encoding='utf-8'))
        if raw is not None and not isinstance(raw, dict):
            raise ValueError(f"configuration file {path} must contain a mapping")
        data = {str(k).replace('-', '_'): v for k, v in (raw or {}).items()}
    for var, (key, convert) in _ENV.items():
        if var in env:
            data[key] = convert(env[var])
    return CrispConfig.from_dict(data)
