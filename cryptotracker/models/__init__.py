from cryptotracker.models.kv import KeyValueEntry

__all__ = [
    "KeyValueEntry",
]
