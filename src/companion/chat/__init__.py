"""Chat side of the companion: conversation log, memory, streaming replies.

Data flow::

    user input → MessageLog.append
      → MemoryCollaborator (condense old turns, build context window)
      → ChatDispatcher (custom endpoint or gateway, streaming POST)
      → StreamDecoder (event-stream bytes → text deltas)
      → MessageLog.append_content on the in-progress assistant message
"""

from companion.chat.dispatcher import ChatDispatcher, ChatRequest
from companion.chat.log import MessageLog
from companion.chat.memory import ConversationMemory, GatewaySummarizer, MemoryCollaborator
from companion.chat.storage import JsonFileStorage, KeyValueStorage, MemoryStorage
from companion.chat.stream import StreamDecoder, iter_deltas, parse_event_line

__all__ = [
    "ChatDispatcher",
    "ChatRequest",
    "ConversationMemory",
    "GatewaySummarizer",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryCollaborator",
    "MemoryStorage",
    "MessageLog",
    "StreamDecoder",
    "iter_deltas",
    "parse_event_line",
]
