import hmac

from fastapi import Header, HTTPException, status

from config.env import ADMIN_API_KEY


async def require_api_key(x_api_key: str | None = Header(None)):
    if not ADMIN_API_KEY:
        # Unset key only allowed outside production (see validate_production_env)
        return

    if not x_api_key or not hmac.compare_digest(x_api_key, ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


async def get_actor(x_actor: str | None = Header(None)) -> str | None:
    actor = (x_actor or "").strip()
    return actor or None
