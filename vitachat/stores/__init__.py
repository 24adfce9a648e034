"""Persistence collaborators: users, chat messages, API call log."""

from vitachat.stores.api_call_store import ApiCallStore, api_call_store
from vitachat.stores.message_store import MessageStore, message_store
from vitachat.stores.user_store import UserStore, user_store

__all__ = [
    "ApiCallStore",
    "MessageStore",
    "UserStore",
    "api_call_store",
    "message_store",
    "user_store",
]
