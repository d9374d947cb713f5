# live_tuning.py
"""Hot-reload tracking parameters from a JSON file while the loop runs.

Recognised keys::

    {
        "threshold": 250,
        "process_noise_var": 0.1,
        "measurement_noise_var": 1e-5,
        "lost_blob_policy": "hold"
    }
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Tuple

TUNABLE_KEYS = frozenset(
    {"threshold", "process_noise_var", "measurement_noise_var", "lost_blob_policy"}
)


class RuntimeParamWatcher:
    """Watch a JSON file and reload it when its mtime or size changes."""

    def __init__(self, path: str | Path = "runtime_params.json") -> None:
        self.path = Path(path).expanduser().resolve()
        self._stamp: Tuple[float, int] = (0.0, -1)  # (mtime, size)
        self.params: Dict[str, Any] = {}

        print(f"[Runtime] Watching: {self.path}")
        self._load(initial=True)

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _load(self, *, initial: bool = False) -> None:
        try:
            with self.path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
            stat = self.path.stat()
            self._stamp = (stat.st_mtime, stat.st_size)
        except FileNotFoundError:
            if initial:
                print(f"[Runtime] {self.path} not found, live-tuning idle until it appears.")
            else:
                print(f"[Runtime] {self.path} was deleted, keeping old params.")
            return
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[Runtime] Could not load {self.path}: {exc}")
            return

        if not isinstance(data, dict):
            print(f"[Runtime] {self.path} must hold a JSON object, ignoring.")
            return
        unknown = sorted(set(data) - TUNABLE_KEYS)
        if unknown:
            print(f"[Runtime] Ignoring unknown keys: {', '.join(unknown)}")
        self.params = {k: v for k, v in data.items() if k in TUNABLE_KEYS}
        if not initial:
            print(f"[Runtime] Reloaded parameters from {self.path}")

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def maybe_reload(self) -> bool:
        """Reload and return True if the file changed since the last call."""
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return False

        mtime, fsize = self._stamp
        if stat.st_size != fsize or stat.st_mtime != mtime:
            self._load()
            return True
        return False

    def get(self, key: str, default: Any | None = None) -> Any:
        return self.params.get(key, default)
