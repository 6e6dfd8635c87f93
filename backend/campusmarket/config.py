import os
from typing import Any, Dict, List, Optional

_SERVER_CONFIG: Dict[str, Any] = {}

_TRUTHY = {"1", "true", "yes", "y", "on"}


def get_setting(key: str, default: Optional[Any] = None) -> Any:
    """Read a server-side setting. Precedence: loaded Mongo config -> environment -> default."""
    if key in _SERVER_CONFIG:
        return _SERVER_CONFIG[key]
    return os.getenv(key, default)  # type: ignore[no-any-return]


def get_bool_setting(key: str, default: bool = False) -> bool:
    v = get_setting(key)
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in _TRUTHY


def get_float_setting(key: str, default: float) -> float:
    v = get_setting(key)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def get_list_setting(key: str) -> List[str]:
    """Comma separated values, or a list when the Mongo runtime config stores one."""
    v = get_setting(key)
    if not v:
        return []
    if isinstance(v, (list, tuple)):
        return [str(s).strip() for s in v if str(s).strip()]
    return [s.strip() for s in str(v).split(",") if s.strip()]


def dev_mode() -> bool:
    return get_bool_setting("DEV_MODE", True)


def strict_transitions() -> bool:
    return get_bool_setting("MODERATION_STRICT_TRANSITIONS", False)


async def load_server_config_from_mongo(mdb) -> None:
    """Load server config from MongoDB into memory if available.
    The expected document shape (collection: config, id: 'runtime'):
      { _id: 'runtime', server: { KEY: VALUE, ... } }
    """
    if mdb is None:
        return
    coll = mdb.get_collection("config")
    doc = await coll.find_one({"_id": "runtime"})
    if not doc:
        return
    server = doc.get("server") or {}
    if isinstance(server, dict):
        # Merge into memory; prefer Mongo values
        _SERVER_CONFIG.update(server)


def override_settings(values: Dict[str, Any]) -> None:
    """Set in-process overrides (same precedence as the Mongo runtime config)."""
    _SERVER_CONFIG.update(values)


def reset_settings() -> None:
    _SERVER_CONFIG.clear()
