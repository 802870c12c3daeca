"""
Student Verification Dashboard: Discord OAuth2 Identity
Optional login so moderation actions are attributed to the moderator who took them.

Logging in is never required: without a session, actions are recorded under
DEFAULT_ACTOR (env, "admin" by default). No role or permission checks are made here.
"""

import os
import logging
import httpx
from typing import Optional, Dict
from urllib.parse import urlencode
from itsdangerous import URLSafeTimedSerializer, BadSignature
from fastapi import Request, Response

from verification import default_actor

logger = logging.getLogger(__name__)

# Discord OAuth2 endpoints
DISCORD_API = "https://discord.com/api/v10"
AUTHORIZE_URL = "https://discord.com/oauth2/authorize"
TOKEN_URL = f"{DISCORD_API}/oauth2/token"
USER_URL = f"{DISCORD_API}/users/@me"

SCOPES = "identify"

# Cookie settings
SESSION_COOKIE = "verify_dashboard_session"
SESSION_MAX_AGE = 60 * 60 * 12  # 12 hours


def _get_serializer():
    secret = os.getenv("SECRET_KEY", "fallback-dev-secret-change-me")
    return URLSafeTimedSerializer(secret, salt="moderator-session")


def get_dashboard_url() -> str:
    return os.getenv("DASHBOARD_URL", "http://localhost:8000").rstrip("/")


def get_redirect_uri():
    return f"{get_dashboard_url()}/auth/callback"


def get_login_url() -> str:
    params = {
        "client_id": os.getenv("DISCORD_CLIENT_ID", ""),
        "redirect_uri": get_redirect_uri(),
        "response_type": "code",
        "scope": SCOPES,
        "prompt": "consent",
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


async def exchange_code(code: str) -> Optional[Dict]:
    """Exchange an authorization code for an access token."""
    data = {
        "client_id": os.getenv("DISCORD_CLIENT_ID"),
        "client_secret": os.getenv("DISCORD_CLIENT_SECRET"),
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": get_redirect_uri(),
    }
    async with httpx.AsyncClient(timeout=10) as client:
        resp = await client.post(
            TOKEN_URL, data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"}
        )
        if resp.status_code != 200:
            logger.warning(f"[AUTH] Token exchange failed: {resp.status_code} {resp.text}")
            return None
        return resp.json()


async def get_discord_user(access_token: str) -> Optional[Dict]:
    """Fetch the authenticated user's Discord profile."""
    headers = {"Authorization": f"Bearer {access_token}"}
    async with httpx.AsyncClient(timeout=10) as client:
        resp = await client.get(USER_URL, headers=headers)
        if resp.status_code != 200:
            logger.warning(f"[AUTH] User fetch failed: {resp.status_code}")
            return None
        return resp.json()


def session_from_user(discord_user: Dict) -> Dict:
    return {
        "id": str(discord_user["id"]),
        "username": discord_user.get("global_name") or discord_user.get("username") or "Unknown",
        "discord_username": discord_user.get("username", "Unknown"),
    }


def set_session(response: Response, user_data: dict):
    token = _get_serializer().dumps(user_data)
    response.set_cookie(
        SESSION_COOKIE, token,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=get_dashboard_url().startswith("https://"),
        samesite="lax"
    )


def get_session(request: Request) -> Optional[Dict]:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    try:
        return _get_serializer().loads(token, max_age=SESSION_MAX_AGE)
    except BadSignature:
        return None


def clear_session(response: Response):
    response.delete_cookie(SESSION_COOKIE)


def get_actor(request: Request) -> str:
    """Identity recorded as verified_by / performed_by for this request."""
    session = get_session(request)
    if session and session.get("discord_username"):
        return f"{session['discord_username']} ({session['id']})"
    return default_actor()
