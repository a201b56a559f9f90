"""
Operator authentication for the administrative backup routes.

Operators authenticate with a bearer token (BACKUP_ADMIN_TOKEN); there are no
user accounts in this service.
"""

import hmac
from typing import Optional

from flask import current_app
from flask_login import UserMixin


class Operator(UserMixin):
    """
    Flask-Login identity for a token-authenticated operator.
    """

    id = 'operator'

    def get_id(self):
        """Return operator ID as required by Flask-Login."""
        return self.id


def verify_token(expected: Optional[str], presented: Optional[str]) -> bool:
    """
    Compare a presented token with the configured one in constant time.

    Returns:
        False when no token is configured or nothing was presented
    """
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode(), presented.encode())


def load_operator_from_request(request) -> Optional[Operator]:
    """Flask-Login request loader: accept 'Authorization: Bearer <token>'."""
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')

    if scheme.lower() != 'bearer':
        return None

    if verify_token(current_app.config.get('BACKUP_ADMIN_TOKEN'), token.strip()):
        return Operator()
    return None
