from common import llm
from common.ids import new_chat_id
from common.jsonio import load_json, atomic_write_json

__all__ = ["llm", "new_chat_id", "load_json", "atomic_write_json"]
