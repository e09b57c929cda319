"""
Proxy settings snapshot.

All cache, descriptor and manager operations take a ProxySettings instance
instead of reading global state, so they can run without a host application.
The server builds one from MLTPROXY_* environment variables.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple

DEFAULT_PROXY_FOLDER = os.path.join(os.path.expanduser("~"), ".cache", "mltproxy", "proxies")

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off', '')


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (1/0, true/false), got '{value}'")


def _parse_int(name: str, value: str) -> int:
    try:
        number = int(value.strip() or 0)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'")
    if number < 0:
        raise ValueError(f"{name} cannot be negative, got {number}")
    return number


@dataclass(frozen=True)
class ProxySettings:
    """Read-only proxy configuration.

    Attributes:
        enabled: Proxy generation is switched on
        folder: Global proxy folder
        use_project_folder: Prefer ``<project folder>/proxies`` for new proxies
        use_hardware: Try hardware encoders before libx264
        hardware_codecs: Hardware encoders available on this machine
        preview_scale: Preview/proxy height; 0 uses the fallback resolution
    """
    enabled: bool = True
    folder: str = DEFAULT_PROXY_FOLDER
    use_project_folder: bool = True
    use_hardware: bool = False
    hardware_codecs: Tuple[str, ...] = ()
    preview_scale: int = 0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ProxySettings':
        """Build settings from MLTPROXY_* environment variables.

        Raises:
            ValueError: When a boolean or integer variable is malformed.
        """
        env = os.environ if environ is None else environ
        codecs = env.get("MLTPROXY_HARDWARE_CODECS", "")
        return cls(
            enabled=_parse_bool("MLTPROXY_ENABLED", env.get("MLTPROXY_ENABLED", "1")),
            folder=os.path.expanduser(env.get("MLTPROXY_FOLDER", DEFAULT_PROXY_FOLDER)),
            use_project_folder=_parse_bool(
                "MLTPROXY_USE_PROJECT_FOLDER", env.get("MLTPROXY_USE_PROJECT_FOLDER", "1")),
            use_hardware=_parse_bool(
                "MLTPROXY_USE_HARDWARE", env.get("MLTPROXY_USE_HARDWARE", "0")),
            hardware_codecs=tuple(c.strip() for c in codecs.split(',') if c.strip()),
            preview_scale=_parse_int(
                "MLTPROXY_PREVIEW_SCALE", env.get("MLTPROXY_PREVIEW_SCALE", "0")),
        )

    def with_overrides(self, **changes) -> 'ProxySettings':
        return replace(self, **changes)

    @property
    def folder_path(self) -> Path:
        return Path(self.folder)
