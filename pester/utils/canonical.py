import orjson


def dumps(event: dict) -> bytes:
    # compact, key order preserved as built by the event models
    return orjson.dumps(event)


def dumps_text(event: dict) -> str:
    return orjson.dumps(event).decode("utf-8")


def loads(raw: bytes | str):
    return orjson.loads(raw)


JSONDecodeError = orjson.JSONDecodeError
