KEY_PREFIX = "security"


def redis_key(*parts: str) -> str:
    return ":".join([KEY_PREFIX, *[str(part) for part in parts]])
