from .cookies import ApprovalRecord, CookieCodec, CookiePolicy
from .consent import ApprovalGate
from .upstream import UpstreamExchangeClient
from .callback import CallbackBinder
from .grants import ClientRegistry, GrantIssuer, GrantStore
from .provider import BridgeProvider

__all__ = [
    "ApprovalGate",
    "ApprovalRecord",
    "BridgeProvider",
    "CallbackBinder",
    "ClientRegistry",
    "CookieCodec",
    "CookiePolicy",
    "GrantIssuer",
    "GrantStore",
    "UpstreamExchangeClient",
]
