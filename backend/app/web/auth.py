import secrets

from fastapi import Request

from backend.app.core.config import Settings
from backend.app.services.errors import Unauthorized


def generate_admin_secret() -> str:
    return secrets.token_hex(32)


def verify_admin_secret(settings: Settings, provided: str | None) -> None:
    expected = settings.admin_secret
    if not expected or not provided:
        raise Unauthorized("Unauthorized")
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise Unauthorized("Unauthorized")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
