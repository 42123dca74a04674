import hashlib
from typing import Union


def sha256_hex(data: Union[str, bytes, bytearray, memoryview]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    h = hashlib.sha256()
    h.update(bytes(data))
    return h.hexdigest()


def blob_key(data: Union[str, bytes, bytearray, memoryview], namespace: str = "blob") -> str:
    return f"{namespace}/{sha256_hex(data)}"
