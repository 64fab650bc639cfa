import json
import os
from pathlib import Path
from typing import Optional, Protocol, Union

from .debug import debug_print
from .schema import CookieBundle


class CookieStore(Protocol):
    def load(self) -> Optional[CookieBundle]:
        ...

    def save(self, bundle: CookieBundle) -> None:
        ...


class JsonCookieStore:
    """Keeps the cookie bundle in a JSON file readable only by its owner."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def load(self) -> Optional[CookieBundle]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            debug_print(f"⚠️  Cookie file error: {e}, ignoring {self.path}")
            return None

        bundle = CookieBundle.from_dict(data)
        if not bundle.primary:
            debug_print(f"⚠️  Cookie file {self.path} has no primary cookie")
            return None
        return bundle

    def save(self, bundle: CookieBundle) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(bundle.to_dict(), f, indent=4)
        # O_CREAT only applies the mode to new files.
        os.chmod(self.path, 0o600)
        debug_print(f"💾 Saved cookies to {self.path}")
