# oneshotsg_io/safeguard_ref.py
# Resolve the external safeguarding transform from "package.module:function".
import importlib

from models import ConfigurationError


def resolve_safeguard(ref: str):
    mod_name, sep, attr = str(ref or "").partition(":")
    if not sep or not mod_name or not attr:
        raise ConfigurationError(f"Safeguard reference must look like 'module:function', got {ref!r}")
    try:
        mod = importlib.import_module(mod_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import safeguard module {mod_name!r}: {e}") from e
    fn = mod
    for part in attr.split("."):
        fn = getattr(fn, part, None)
        if fn is None:
            raise ConfigurationError(f"{mod_name!r} has no attribute {attr!r}")
    if not callable(fn):
        raise ConfigurationError(f"Safeguard {ref!r} is not callable")
    return fn
