import logging
from urllib.parse import parse_qs

from channels.auth import AuthMiddlewareStack
from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.exceptions import AuthenticationFailed, InvalidToken

logger = logging.getLogger(__name__)


def token_from_scope(scope):
    """
    Raw access token from ``?token=`` or an ``Authorization: Bearer`` header.

    Mobile WebSocket clients cannot always set headers, so the query string
    is checked first.
    """
    query = parse_qs(scope.get('query_string', b'').decode())
    if query.get('token'):
        return query['token'][0]

    for name, value in scope.get('headers', []):
        if name == b'authorization':
            parts = value.decode().split()
            if len(parts) == 2 and parts[0] == 'Bearer':
                return parts[1]
    return None


@database_sync_to_async
def get_user_for_token(raw_token):
    authenticator = JWTAuthentication()
    try:
        return authenticator.get_user(authenticator.get_validated_token(raw_token))
    except (InvalidToken, AuthenticationFailed) as e:
        logger.info(f"Rejected WebSocket token: {e}")
        return None


class JWTAuthMiddleware(BaseMiddleware):
    """Sets scope['user'] from a simplejwt access token when one is presented."""

    async def __call__(self, scope, receive, send):
        raw_token = token_from_scope(scope)
        if raw_token:
            user = await get_user_for_token(raw_token)
            if user is not None:
                scope = dict(scope, user=user)
        return await super().__call__(scope, receive, send)


def JWTAuthMiddlewareStack(inner):
    # Session auth still applies; a valid token takes precedence.
    return AuthMiddlewareStack(JWTAuthMiddleware(inner))
