# deps/admin.py
import hmac

from fastapi import Header, HTTPException, status

from settings import settings


def _check_key(provided: str | None, expected: str | None, *, name: str) -> None:
    if not (expected or "").strip():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "API_KEY_NOT_CONFIGURED", "key": name},
        )
    if not provided or not hmac.compare_digest(provided.strip().encode(), expected.strip().encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="UNAUTHORIZED",
        )


def require_admin(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    _check_key(x_admin_key, settings.ADMIN_API_KEY, name="ADMIN_API_KEY")


def require_cron(x_cron_key: str | None = Header(default=None, alias="X-Cron-Key")) -> None:
    _check_key(x_cron_key, settings.CRON_API_KEY, name="CRON_API_KEY")


def require_ingest(x_ingest_key: str | None = Header(default=None, alias="X-Ingest-Key")) -> None:
    _check_key(x_ingest_key, settings.INGEST_API_KEY, name="INGEST_API_KEY")
