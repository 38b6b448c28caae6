import secrets

from labkeeper.config import settings


def generate_approval_token() -> str:
    return secrets.token_hex(32)


def build_approval_link(token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/faculty/approve?token={token}"
