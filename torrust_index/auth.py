from dataclasses import dataclass
from typing import Optional

from .errors import Unauthorized


@dataclass(frozen=True)
class User:
    username: str
    administrator: bool = False


class Auth:
    """Resolves the requesting user from an ``Authorization: Bearer <token>`` header."""

    def __init__(self, database):
        self.database = database

    @staticmethod
    def _token_from_request(request) -> Optional[str]:
        header = request.headers.get('Authorization', '')
        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer' or not token.strip():
            return None
        return token.strip()

    def get_user_from_request(self, request) -> User:
        token = self._token_from_request(request)
        if token is None:
            raise Unauthorized("please sign in")
        row = self.database.get_user_by_token(token)
        if row is None:
            raise Unauthorized("invalid token")
        return User(username=row['username'], administrator=bool(row['administrator']))

    def get_optional_user(self, request) -> Optional[User]:
        try:
            return self.get_user_from_request(request)
        except Unauthorized:
            return None
