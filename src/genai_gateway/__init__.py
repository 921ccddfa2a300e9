from .config import GatewayConfig
from .cooldown_manager import CooldownTracker
from .credential_pool import Credential, CredentialPool
from .dispatcher import DispatchAttempt, DispatchResult, RequestDispatcher
from .error_handler import (
    AuthInvalid,
    ClassifiedError,
    ConfigurationError,
    DispatchError,
    PermanentRequestError,
    RateLimited,
    TransportError,
    UpstreamError,
    classify_error,
)
from .live_session import (
    FallbackConversation,
    LiveSession,
    LiveSessionError,
    PlaybackQueue,
    SessionState,
    StreamingSessionBroker,
)
from .relay_client import RelayClient, RelayError
from .selection import RandomSelector, RoundRobinSelector, build_selector
from .upstream import GenAIUpstream, RequestEnvelope

__all__ = [
    "GatewayConfig",
    "CooldownTracker",
    "Credential",
    "CredentialPool",
    "DispatchAttempt",
    "DispatchResult",
    "RequestDispatcher",
    "AuthInvalid",
    "ClassifiedError",
    "ConfigurationError",
    "DispatchError",
    "PermanentRequestError",
    "RateLimited",
    "TransportError",
    "UpstreamError",
    "classify_error",
    "FallbackConversation",
    "LiveSession",
    "LiveSessionError",
    "PlaybackQueue",
    "SessionState",
    "StreamingSessionBroker",
    "RelayClient",
    "RelayError",
    "RandomSelector",
    "RoundRobinSelector",
    "build_selector",
    "GenAIUpstream",
    "RequestEnvelope",
]
