from docingest.auth.token import JWTAuthVerifier
from docingest.auth.dependencies import Facade, OwnerId, get_facade, get_owner_id, get_verifier

__all__ = [
    "JWTAuthVerifier",
    "Facade", "OwnerId", "get_facade", "get_owner_id", "get_verifier",
]
