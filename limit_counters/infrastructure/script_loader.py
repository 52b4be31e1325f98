from __future__ import annotations

from pathlib import Path

from limit_counters.core.errors import ResourceLoadError

COUNTER_SCRIPT_PATH = Path(__file__).with_name("lua") / "counter.lua"


def load_counter_script(path: Path = COUNTER_SCRIPT_PATH) -> str:
    try:
        source = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ResourceLoadError(str(path), exc) from exc
    if not source.strip():
        raise ResourceLoadError(str(path))
    return source
