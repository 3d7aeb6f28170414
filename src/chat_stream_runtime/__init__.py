from chat_stream_runtime.api_client import ChatApiClient
from chat_stream_runtime.app_config import RuntimeConfig, parse_app_config
from chat_stream_runtime.errors import ChatRuntimeError, ConfigurationError, NoThreadSelectedError, TransportError
from chat_stream_runtime.operation import CancelReason, InFlightOperation, OperationCancelled, OperationSlot
from chat_stream_runtime.services.reconciliation_poller import ReconciliationPoller
from chat_stream_runtime.services.session_controller import ChatSession
from chat_stream_runtime.stream_decoder import HybridStreamDecoder
from chat_stream_runtime.stream_timers import StreamTimers, TimeoutKind
from chat_stream_runtime.transcript import Message, Thread, ThreadDetail, ThreadPage, TranscriptStore

__all__ = [
    "CancelReason",
    "ChatApiClient",
    "ChatRuntimeError",
    "ChatSession",
    "ConfigurationError",
    "HybridStreamDecoder",
    "InFlightOperation",
    "Message",
    "NoThreadSelectedError",
    "OperationCancelled",
    "OperationSlot",
    "ReconciliationPoller",
    "RuntimeConfig",
    "StreamTimers",
    "Thread",
    "ThreadDetail",
    "ThreadPage",
    "TimeoutKind",
    "TranscriptStore",
    "TransportError",
    "parse_app_config",
]
