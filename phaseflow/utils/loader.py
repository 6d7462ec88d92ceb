import importlib
from typing import Any, Optional


def load_object(path: str, required_attr: Optional[str] = None) -> Any:
    """
    Resolve a ``module:attribute`` reference.

    Classes are instantiated without arguments. Other callables that do not
    already expose ``required_attr`` are treated as factories and called.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")

    try:
        module = importlib.import_module(module_name)
        obj = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Failed to load '{attr}' from module '{module_name}': {e}") from e

    if isinstance(obj, type):
        return obj()
    if callable(obj) and required_attr and not hasattr(obj, required_attr):
        return obj()
    return obj
