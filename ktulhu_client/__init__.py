"""Ktulhu streaming session client.

One always-available conversational channel to an inference backend over a
WebSocket: reconnects with backoff, re-registers identity on every open,
correlates prompts with their streamed tokens, and fans out every inbound
frame to any number of handler sets.
"""

from .backoff import Backoff
from .chat import ChatMessage, ChatSession
from .connection import ConnectionManager, ConnectionState
from .correlator import InflightRequest, PromptCorrelator
from .dispatch import DispatchRegistry, HandlerSet
from .errors import ClientError, MalformedMessageError, NotConnectedError
from .identity import Identity, IdentityProvider
from .messages import JsonMessage, RawMessage, classify
from .summaries import ChatSummaries, ChatSummary

__version__ = "0.1.0"

__all__ = [
    "Backoff",
    "ChatMessage",
    "ChatSession",
    "ChatSummaries",
    "ChatSummary",
    "ClientError",
    "ConnectionManager",
    "ConnectionState",
    "DispatchRegistry",
    "HandlerSet",
    "Identity",
    "IdentityProvider",
    "InflightRequest",
    "JsonMessage",
    "MalformedMessageError",
    "NotConnectedError",
    "PromptCorrelator",
    "RawMessage",
    "classify",
]
