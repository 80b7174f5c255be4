import json
from pathlib import Path
from typing import Dict, Optional, Union

from .config import debug_print

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
ANONYMOUS_TOKEN_KEY = "anonymous_token"

_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, ANONYMOUS_TOKEN_KEY)


class CredentialStore:
    """
    Durable credential pair (plus the anonymous-session credential).

    Backed by a JSON file when `path` is given, otherwise kept in memory only.
    Only the refresh coordinator writes here; everything else reads.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, initial: Optional[Dict[str, str]] = None) -> None:
        self._path = Path(path) if path else None
        self._values: Dict[str, str] = {}
        if self._path is not None:
            self._values.update(self._load())
        for key, value in (initial or {}).items():
            if key in _KEYS and value:
                self._values[key] = str(value)

    def _load(self) -> Dict[str, str]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            debug_print(f"⚠️  Credentials file error: {e}, starting signed out")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: str(v) for k, v in data.items() if k in _KEYS and isinstance(v, str) and v.strip()}

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            with open(self._path, "w", encoding="utf-8") as f:
                json.dump(self._values, f, indent=4)
        except OSError as e:
            debug_print(f"❌ Error saving credentials: {e}")

    def get(self, key: str) -> Optional[str]:
        value = self._values.get(key)
        return value or None

    @property
    def access_token(self) -> Optional[str]:
        return self.get(ACCESS_TOKEN_KEY)

    @property
    def refresh_token(self) -> Optional[str]:
        return self.get(REFRESH_TOKEN_KEY)

    @property
    def anonymous_token(self) -> Optional[str]:
        return self.get(ANONYMOUS_TOKEN_KEY)

    def set(self, key: str, value: Optional[str]) -> None:
        if key not in _KEYS:
            raise KeyError(key)
        if value:
            self._values[key] = str(value)
        else:
            self._values.pop(key, None)
        self._save()

    def set_tokens(self, access: Optional[str], refresh: Optional[str] = None) -> None:
        self._values.pop(ACCESS_TOKEN_KEY, None)
        if access:
            self._values[ACCESS_TOKEN_KEY] = str(access)
        if refresh:
            self._values[REFRESH_TOKEN_KEY] = str(refresh)
        self._save()

    def clear(self) -> None:
        """Drop the user credential pair; the anonymous credential survives logout."""
        self._values.pop(ACCESS_TOKEN_KEY, None)
        self._values.pop(REFRESH_TOKEN_KEY, None)
        self._save()
