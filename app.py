"""
Student Verification Dashboard: Web App
Moderator views over the verification store: overview stats, student requests
(approve / reject), audit trail and the companion bot's channel / role config.
"""

import os, logging, datetime
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Form
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException

from db import db, DataAccessFailure
import auth
import stats
import verification

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent


# ==========================================
# APP SETUP
# ==========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.connect()
    logger.info("Verification dashboard live")
    logger.info(f"[CONFIG] GUILD_ID: {verification.config_guild_id()}")
    logger.info(f"[CONFIG] DEFAULT_ACTOR: {verification.default_actor()}")
    yield
    await db.close()

app = FastAPI(title="Student Verification Dashboard", lifespan=lifespan)
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")


# ==========================================
# TEMPLATE HELPERS
# ==========================================
def _ctx(request: Request) -> dict:
    return {
        "user": auth.get_session(request),
        "actor": auth.get_actor(request),
        "success": request.query_params.get("success", ""),
        "error": request.query_params.get("error", ""),
    }

def _fdate(value) -> str:
    if not value: return "-"
    try:
        dt = stats.as_datetime(value)
    except ValueError:
        return str(value)
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")

def _time_ago(value) -> str:
    if not value: return "Never"
    try:
        dt = stats.as_datetime(value)
    except ValueError:
        return str(value)[:10]
    secs = (datetime.datetime.now(datetime.timezone.utc) - dt).total_seconds()
    if secs < 60: return "Just now"
    if secs < 3600: return f"{int(secs//60)}m ago"
    if secs < 86400: return f"{int(secs//3600)}h ago"
    return f"{int(secs//86400)}d ago"

def _bar_width(count, peak) -> int:
    if not peak: return 0
    return max(4, int(count / peak * 100))

templates.env.filters["fdate"] = _fdate
templates.env.filters["timeago"] = _time_ago
templates.env.globals["bar_width"] = _bar_width
templates.env.globals["can_approve"] = verification.can_approve


def _error_page(request: Request, code: int, title: str, msg: str):
    c = _ctx(request)
    c.update(error_code=code, error_title=title, error_msg=msg)
    return templates.TemplateResponse(request, "error.html", c, status_code=code)


# ==========================================
# ERROR HANDLERS
# ==========================================
@app.exception_handler(DataAccessFailure)
async def data_unavailable(request: Request, exc: DataAccessFailure):
    logger.error(f"[{request.url.path}] Data unavailable: {exc}")
    return _error_page(request, 503, "Data Unavailable",
                       "The verification database could not be reached. Try again later.")

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _error_page(request, 404, "Page Not Found", "The page you're looking for doesn't exist.")
    return _error_page(request, exc.status_code, "Error", str(exc.detail))

@app.exception_handler(500)
async def server_error(request: Request, exc):
    return _error_page(request, 500, "Server Error", "Something went wrong. Try again later.")


# ==========================================
# AUTH ROUTES
# ==========================================
@app.get("/auth/login")
async def login():
    return RedirectResponse(auth.get_login_url())

@app.get("/auth/callback")
async def callback(code: Optional[str] = None, error: Optional[str] = None):
    if error or not code:
        return RedirectResponse("/?error=auth_failed")
    token_data = await auth.exchange_code(code)
    if not token_data:
        return RedirectResponse("/?error=token_failed")
    discord_user = await auth.get_discord_user(token_data.get("access_token"))
    if not discord_user:
        return RedirectResponse("/?error=user_failed")
    session = auth.session_from_user(discord_user)
    logger.info(f"[AUTH] {session['discord_username']} ({session['id']}) logged in")
    response = RedirectResponse("/students")
    auth.set_session(response, session)
    return response

@app.get("/auth/logout")
async def logout():
    response = RedirectResponse("/")
    auth.clear_session(response)
    return response


# ==========================================
# DASHBOARD
# ==========================================
@app.get("/", response_class=HTMLResponse)
async def dashboard(request: Request):
    c = _ctx(request)
    c["data"] = await stats.get_dashboard_stats(db)
    return templates.TemplateResponse(request, "dashboard.html", c)


# ==========================================
# STUDENTS
# ==========================================
@app.get("/students", response_class=HTMLResponse)
async def students(request: Request):
    c = _ctx(request)
    c["students"] = await verification.list_requests(db)
    return templates.TemplateResponse(request, "students.html", c)

async def _moderate(request: Request, discord_id: str, approve: bool, student_number: str):
    target = await verification.get_request(db, discord_id)
    if target is None:
        return RedirectResponse("/students?error=not_found", status_code=303)
    if approve and not verification.can_approve(target):
        return RedirectResponse("/students?error=already_verified", status_code=303)
    try:
        await verification.moderate(db, discord_id, approve,
                                    student_number=student_number or target.get("student_number"),
                                    actor=auth.get_actor(request))
    except verification.RequestNotFound:
        return RedirectResponse("/students?error=not_found", status_code=303)
    except DataAccessFailure as e:
        logger.error(f"[STUDENTS] Update failed for {discord_id}: {e}")
        return RedirectResponse("/students?error=update_failed", status_code=303)
    return RedirectResponse(f"/students?success={'approved' if approve else 'rejected'}", status_code=303)

@app.post("/students/{discord_id}/approve")
async def approve_student(request: Request, discord_id: str, student_number: str = Form("")):
    return await _moderate(request, discord_id, True, student_number)

@app.post("/students/{discord_id}/reject")
async def reject_student(request: Request, discord_id: str, student_number: str = Form("")):
    return await _moderate(request, discord_id, False, student_number)


# ==========================================
# AUDIT LOGS
# ==========================================
@app.get("/logs", response_class=HTMLResponse)
async def logs(request: Request):
    c = _ctx(request)
    c["logs"] = await verification.get_audit_log(db)
    return templates.TemplateResponse(request, "logs.html", c)


# ==========================================
# BOT CONFIG
# ==========================================
def _valid_snowflake(value: str) -> bool:
    return not value or value.isdigit()

@app.get("/config", response_class=HTMLResponse)
async def config_page(request: Request):
    c = _ctx(request)
    c["config"] = await verification.load_config(db)
    return templates.TemplateResponse(request, "config.html", c)

@app.post("/config")
async def save_config(verify_channel_id: str = Form(""), verifier_role_id: str = Form(""),
                      student_role_id: str = Form("")):
    ids = [v.strip() for v in (verify_channel_id, verifier_role_id, student_role_id)]
    if not all(_valid_snowflake(v) for v in ids):
        return RedirectResponse("/config?error=invalid_id", status_code=303)
    try:
        await verification.save_config(db, *ids)
    except DataAccessFailure as e:
        logger.error(f"[CONFIG] Save failed: {e}")
        return RedirectResponse("/config?error=db_error", status_code=303)
    return RedirectResponse("/config?success=saved", status_code=303)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
