import os
import tomllib
from typing import Any, Dict, List


DEFAULT_CONFIG_PATHS = [
    os.path.join("config", "config.toml"),
    "config.toml",
]


def _bool_from_str(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _first_existing_path(paths):
    for p in paths:
        if p and os.path.isfile(os.path.abspath(p)):
            return os.path.abspath(p)
    return None


def _coerce(section: Dict[str, Any], key: str, cast, default) -> None:
    try:
        section[key] = cast(section.get(key, default))
    except (TypeError, ValueError):
        section[key] = default


def load_config(path: str = None) -> Dict[str, Any]:
    """
    Load configuration from a TOML file.
    Falls back to environment variables and defaults.
    """
    cfg_path = _first_existing_path([path, os.environ.get("CONFIG_FILE")] + DEFAULT_CONFIG_PATHS)
    cfg: Dict[str, Any] = {}
    if cfg_path:
        with open(cfg_path, "rb") as f:
            cfg = tomllib.load(f)

    # Environment overrides
    stellar = cfg.setdefault("stellar", {})
    if os.environ.get("RPC_URL"):
        stellar["rpc_url"] = os.environ["RPC_URL"]
    relay = cfg.setdefault("relay", {})
    if os.environ.get("RELAY_TOKEN"):
        relay["token"] = os.environ["RELAY_TOKEN"]
    log_cfg = cfg.setdefault("logging", {})
    if os.environ.get("LOG_LEVEL"):
        log_cfg["level"] = os.environ["LOG_LEVEL"]
    if os.environ.get("LOG_FILE"):
        log_cfg["file"] = os.environ["LOG_FILE"]
    web = cfg.setdefault("web", {})
    if os.environ.get("WEB_PORT"):
        web["port"] = os.environ["WEB_PORT"]

    return _validate_config(cfg)


def _validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Ensure required sections and types exist; apply sane defaults."""
    # Stellar
    stellar = cfg.setdefault("stellar", {})
    stellar.setdefault("rpc_url", "https://mainnet.sorobanrpc.com")
    stellar.setdefault("contract", "CDL74RF5BLYR2YBLCCI7F5FB6TPSCLKEJUBSD2RSVWZ4YHF3VMFAIGWA")
    stellar.setdefault("network_passphrase", "Public Global Stellar Network ; September 2015")
    stellar.setdefault("horizon_url", "https://horizon.stellar.org")
    stellar.setdefault("asset_code", "KALE")
    stellar.setdefault("asset_issuer", "")
    _coerce(stellar, "base_fee", int, 10_000_000)
    _coerce(stellar, "request_timeout_secs", int, 30)

    # Relay
    relay = cfg.setdefault("relay", {})
    relay.setdefault("url", "")
    relay.setdefault("token", "")
    relay["enabled"] = bool(relay["url"] and relay["token"])

    # Miner
    miner = cfg.setdefault("miner", {})
    miner.setdefault("executable", "./kale-miner")
    _coerce(miner, "difficulty", int, 6)
    _coerce(miner, "nonce", int, 0)
    _coerce(miner, "max_threads", int, 4)
    _coerce(miner, "batch_size", int, 10_000_000)
    _coerce(miner, "device", int, 0)
    for k in ("gpu", "verbose", "continuous"):
        miner[k] = _bool_from_str(miner.get(k), False)

    # Harvester
    harvester = cfg.setdefault("harvester", {})
    _coerce(harvester, "retry_count", int, 3)
    harvester["retry_count"] = max(0, harvester["retry_count"])
    if harvester.get("delay") is not None:
        _coerce(harvester, "delay", float, None)
    else:
        harvester["delay"] = None
    harvester["harvest_only"] = _bool_from_str(harvester.get("harvest_only"), False)
    harvester["background"] = _bool_from_str(harvester.get("background"), True)
    harvester["range"] = str(harvester.get("range") or "")
    tractor = harvester.setdefault("tractor", {})
    tractor.setdefault("contract", "")
    _coerce(tractor, "frequency", float, 0.0)

    # Farm
    farm = cfg.setdefault("farm", {})
    _coerce(farm, "poll_interval_secs", float, 5.0)
    farm["allow_zero_stake"] = _bool_from_str(farm.get("allow_zero_stake"), True)
    farm.setdefault("strategy", "")

    # Web
    web = cfg.setdefault("web", {})
    _coerce(web, "port", int, 3002)
    web.setdefault("host", "0.0.0.0")
    web["enabled"] = _bool_from_str(web.get("enabled"), True)

    # Logging
    log_cfg = cfg.setdefault("logging", {})
    log_cfg.setdefault("level", "INFO")
    log_cfg.setdefault("file", "")

    cfg["farmers"] = _validate_farmers(cfg.get("farmers", []))
    return cfg


def _validate_farmers(farmers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    validated = []
    for index, farmer in enumerate(farmers or []):
        if not isinstance(farmer, dict) or not farmer.get("secret"):
            raise ValueError(f"Farmer #{index + 1} is missing its secret key")
        entry = dict(farmer)
        _coerce(entry, "stake", int, 0)
        _coerce(entry, "difficulty", int, 0)
        _coerce(entry, "min_work_time", float, 0.0)
        entry["harvest_only"] = _bool_from_str(entry.get("harvest_only"), False)
        validated.append(entry)
    return validated
