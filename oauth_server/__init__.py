from oauth_server import authority
from oauth_server import codec
from oauth_server import collector
from oauth_server import config
from oauth_server import errors
from oauth_server import gate
from oauth_server import keys
from oauth_server import locks
from oauth_server import models
from oauth_server import repository
from oauth_server import scopes

from oauth_server.authority import (IssuedToken, TokenAuthority,)
from oauth_server.codec import (TokenCodec,)
from oauth_server.collector import (ExpiredCollector, TokenExpiryTriggerHandler,)
from oauth_server.config import (OAuthSettings, get_settings,)
from oauth_server.errors import (AuthChallenge, BlockedAccount, ExpiredToken,
                                 InvalidClient, InvalidScope, LockContention,
                                 MalformedToken, NotYetValid, OAuthServerError,
                                 RepositoryUnavailable, RevokedToken,
                                 TokenDecodingError, UnauthorizedClient,)
from oauth_server.gate import (AuthenticationGate, AuthRequest, Principal,)
from oauth_server.keys import (KeyProvider,)
from oauth_server.models import (Account, Consumer, Role, Scope, Token,)
from oauth_server.repository import (InMemoryRepository, OAuthRepository,
                                     SQLAlchemyRepository,)
from oauth_server.scopes import (ScopeReferenceField, ScopeRegistry,)

__all__ = ['Account', 'AuthChallenge', 'AuthRequest', 'AuthenticationGate',
           'BlockedAccount', 'Consumer', 'ExpiredCollector', 'ExpiredToken',
           'InMemoryRepository', 'InvalidClient', 'InvalidScope',
           'IssuedToken', 'KeyProvider', 'LockContention', 'MalformedToken',
           'NotYetValid', 'OAuthRepository', 'OAuthServerError',
           'OAuthSettings', 'Principal', 'RepositoryUnavailable',
           'RevokedToken', 'Role', 'SQLAlchemyRepository', 'Scope',
           'ScopeReferenceField', 'ScopeRegistry', 'Token', 'TokenAuthority',
           'TokenCodec', 'TokenDecodingError', 'TokenExpiryTriggerHandler',
           'UnauthorizedClient', 'authority', 'codec', 'collector', 'config',
           'errors', 'gate', 'get_settings', 'keys', 'locks', 'models',
           'repository', 'scopes']
