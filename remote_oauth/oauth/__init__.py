"""OAuth 2.1 session lifecycle for remote deployments.

Main Components:
    TokenLifecycleManager: Login, refresh, logout and re-auth for one deployment
    OAuthInterceptor: Refresh-and-retry-once on 401 for an httpx client
    CredentialVault: Session, token and client records on a CredentialStore
    MetadataClient: RFC 8414 discovery
    ClientRegistry: RFC 7591 dynamic client registration
    AuthorizationCoordinator: One pending browser authorization at a time

Quick Start:
    from remote_oauth.oauth import (
        CredentialVault, Deployment, FileCredentialStore, TokenLifecycleManager,
    )

    store = FileCredentialStore()
    manager = await TokenLifecycleManager.create(
        Deployment.from_url("https://dev.example.com"), CredentialVault(store)
    )
    if not manager.is_logged_in_with_oauth():
        await manager.login()
"""

from .authorizer import AuthorizationCode, AuthorizationCoordinator
from .callback import CallbackResult, CallbackServerError, LocalhostCallbackServer
from .deployment import Deployment, to_safe_host
from .errors import (
    AuthorizationCancelledError,
    AuthorizationError,
    AuthorizationTimeoutError,
    DiscoveryError,
    OAuthClientError,
    OAuthErrorCode,
    OAuthErrorResponse,
    RefreshError,
    RefreshThrottledError,
    RegistrationError,
    RevocationError,
    StateMismatchError,
    TokenExchangeError,
    classify_oauth_error,
    requires_reauthentication,
)
from .interceptor import OAuthInterceptor, OAuthRetryAuth, SessionRetryAuth
from .manager import AuthStatus, SessionState, TokenLifecycleManager
from .metadata import AuthServerMetadata, MetadataClient
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair
from .registry import ClientRegistry
from .scheduler import RefreshScheduler
from .store import (
    CredentialStore,
    CredentialStoreError,
    FileCredentialStore,
    MemoryCredentialStore,
    Subscription,
)
from .tokens import ClientRegistration, SessionAuth, TokenRecord, has_required_scopes
from .vault import CredentialVault

__all__ = [
    # Manager (main entry point)
    "TokenLifecycleManager",
    "SessionState",
    "AuthStatus",
    "RefreshScheduler",
    # HTTP retry
    "OAuthInterceptor",
    "OAuthRetryAuth",
    "SessionRetryAuth",
    # Discovery and registration
    "MetadataClient",
    "AuthServerMetadata",
    "ClientRegistry",
    # Authorization
    "AuthorizationCoordinator",
    "AuthorizationCode",
    "LocalhostCallbackServer",
    "CallbackResult",
    "CallbackServerError",
    # Records and storage
    "Deployment",
    "to_safe_host",
    "TokenRecord",
    "ClientRegistration",
    "SessionAuth",
    "has_required_scopes",
    "CredentialVault",
    "CredentialStore",
    "CredentialStoreError",
    "MemoryCredentialStore",
    "FileCredentialStore",
    "Subscription",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "PKCEPair",
    # Errors
    "OAuthClientError",
    "OAuthErrorCode",
    "OAuthErrorResponse",
    "classify_oauth_error",
    "requires_reauthentication",
    "DiscoveryError",
    "RegistrationError",
    "AuthorizationError",
    "AuthorizationTimeoutError",
    "AuthorizationCancelledError",
    "StateMismatchError",
    "TokenExchangeError",
    "RefreshError",
    "RefreshThrottledError",
    "RevocationError",
]
