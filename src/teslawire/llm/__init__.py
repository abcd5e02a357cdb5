from .client import PROVIDER_TYPES, ChatClient, LlmError

__all__ = ["PROVIDER_TYPES", "ChatClient", "LlmError"]
