# cometapp/utils/config.py
import copy
import os
import yaml

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "defaults.yaml"
)

_TRUTHY = ("1", "true", "yes", "on")


class AttrDict(dict):
    """Dict that also supports attribute access: cfg.cache and cfg['cache'] both work."""
    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as e:
            raise AttributeError(item) from e
    def __setattr__(self, key, value):
        self[key] = value


def _to_attr(obj):
    if isinstance(obj, dict):
        return AttrDict({k: _to_attr(v) for k, v in obj.items()})
    if isinstance(obj, list):
        return [_to_attr(x) for x in obj]
    return obj


def _merge(base: dict, over: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in (over or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config {path!r} must be a mapping at the top level")
    return data


def _env_overrides(data: dict) -> dict:
    cache = data.setdefault("cache", {})
    if os.getenv("COMET_CACHE_DIR"):
        cache["dir"] = os.environ["COMET_CACHE_DIR"]
    if os.getenv("COMET_CACHE_PERSIST"):
        cache["persist"] = os.environ["COMET_CACHE_PERSIST"].lower() in _TRUTHY
    if os.getenv("COMET_CACHE_SCHEMA"):
        cache["schema_version"] = int(os.environ["COMET_CACHE_SCHEMA"])

    for name, prov in (data.get("providers") or {}).items():
        env = f"COMET_{name.upper()}_TIMEOUT_S"
        if os.getenv(env):
            prov["timeout_s"] = float(os.environ[env])

    if os.getenv("CORS_ALLOW_ORIGIN"):
        data.setdefault("http", {})["cors_allow_origin"] = os.environ["CORS_ALLOW_ORIGIN"]
    return data


def load_config(path: str = None, overrides: dict = None):
    """
    Load the packaged defaults, then merge (in order):
      - the YAML at `path` (or $COMET_CONFIG) if given
      - `overrides` (tests / embedding)
      - env vars: COMET_CACHE_DIR, COMET_CACHE_PERSIST, COMET_CACHE_SCHEMA,
        COMET_<PROVIDER>_TIMEOUT_S, CORS_ALLOW_ORIGIN
    Returns an AttrDict for convenient access.
    """
    data = _read_yaml(DEFAULT_CONFIG_PATH)

    path = path or os.getenv("COMET_CONFIG")
    if path and os.path.abspath(path) != DEFAULT_CONFIG_PATH:
        data = _merge(data, _read_yaml(path))
    if overrides:
        data = _merge(data, overrides)

    return _to_attr(_env_overrides(data))
