"""Session credential extraction, refresh and orchestration."""

from teamsmcp.core.auth.browser_refresh import BrowserRefreshEngine
from teamsmcp.core.auth.cache import SessionCache
from teamsmcp.core.auth.direct_refresh import DirectRefreshEngine
from teamsmcp.core.auth.orchestrator import RefreshOrchestrator
from teamsmcp.core.auth.provider import TokenProvider
from teamsmcp.core.auth.session_store import SessionStore

__all__ = [
    "BrowserRefreshEngine",
    "DirectRefreshEngine",
    "RefreshOrchestrator",
    "SessionCache",
    "SessionStore",
    "TokenProvider",
]
