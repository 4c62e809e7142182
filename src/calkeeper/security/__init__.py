"""Security primitives: token encryption, path containment, CSRF and sessions."""

from calkeeper.security.cipher import TokenCipher, decode_key, encode_key, generate_key
from calkeeper.security.csrf import CsrfGuard, consume_oauth_state, issue_oauth_state
from calkeeper.security.paths import PathGuard, ensure_private_dir, resolve_path
from calkeeper.security.session import InMemorySessionStore, SessionHandle, SessionManager

__all__ = [
    "CsrfGuard",
    "InMemorySessionStore",
    "PathGuard",
    "SessionHandle",
    "SessionManager",
    "TokenCipher",
    "consume_oauth_state",
    "decode_key",
    "encode_key",
    "ensure_private_dir",
    "generate_key",
    "issue_oauth_state",
    "resolve_path",
]
