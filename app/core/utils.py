def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input is matched literally (use with escape='\\')."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def client_ip(request) -> str | None:
    if request is None or request.client is None:
        return None
    return request.client.host
