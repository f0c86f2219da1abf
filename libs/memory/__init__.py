"""
Conversation memory for the insight engine.

Provides:
- Session history (session cache + durable chat history)
- Context compression (summary turn + recent turns)
- Query reformulation (standalone follow-up questions)
"""

from libs.memory.chat_history import InMemoryChatHistory, RedisChatHistory
from libs.memory.compression import ContextCompressor
from libs.memory.reformulation import QueryReformulator
from libs.memory.session_history import SessionHistoryService

__all__ = [
    "ContextCompressor",
    "InMemoryChatHistory",
    "QueryReformulator",
    "RedisChatHistory",
    "SessionHistoryService",
]
