from typing import Any, Mapping

def get_nested_value(data: Any, path: str) -> Any:
    """Resolves a dotted path ("client.address.city"); None when any step is missing."""
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
        if current is None:
            return None
    return current

def matches_filters(data: Any, filters: Mapping[str, Any] | None) -> bool:
    if not filters:
        return True
    for path, expected in filters.items():
        if get_nested_value(data, path) != expected:
            return False
    return True
