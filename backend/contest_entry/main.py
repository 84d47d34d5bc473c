import html
import secrets
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .db import settings
from .errors import ContestEntryError, SignatureInvalid, UpstreamProviderError
from .ledger import ledger
from .log import configure_logging
from .payments import gateway
from .schemas import CheckoutSessionOut, ReconcileOut, SubmissionForm, UploadedFile, WebhookAck
from .storage import blob_store
from .submissions import submissions
from .trivia import trivia_bank
from .workflow import workflow

configure_logging()
logger = structlog.get_logger().bind(component="api")

app = FastAPI(title="Contest Entry API")

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBasic()


@app.exception_handler(ContestEntryError)
async def contest_entry_error_handler(request: Request, exc: ContestEntryError):
    return PlainTextResponse(str(exc), status_code=exc.status_code)


def require_admin(credentials: HTTPBasicCredentials = Depends(security)):
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.ADMIN_USERNAME.encode())
    password_ok = secrets.compare_digest(credentials.password.encode(), settings.ADMIN_PASSWORD.encode())
    if not (user_ok and password_ok):
        raise HTTPException(
            status_code=401,
            detail="Authentication required.",
            headers={"WWW-Authenticate": 'Basic realm="401"'},
        )


def _confirmation_page(title: str, heading: str) -> str:
    return f"""<!DOCTYPE html>
<html><head><meta charset="UTF-8"><title>{html.escape(title)}</title>
<style>body{{font-family:Arial;text-align:center;margin-top:50px;background:#f0f8ff;color:#005b96;}}</style>
<script>setTimeout(()=>{{window.location.href='/'}},2000);</script>
</head><body><h1>{html.escape(heading)}</h1><p>Redirecting to homepage...</p></body></html>
"""


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.post("/create-checkout-session", response_model=CheckoutSessionOut)
async def create_checkout_session(origin: Optional[str] = Header(default=None)):
    base = (origin or settings.PUBLIC_BASE_URL).rstrip("/")
    try:
        session_id = await gateway.create_checkout_session(
            success_url=f"{base}/success.html?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/cancel.html",
        )
    except UpstreamProviderError as exc:
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)
    return CheckoutSessionOut(id=session_id)


@app.post("/webhook", response_model=WebhookAck)
async def webhook(request: Request, stripe_signature: Optional[str] = Header(default=None)):
    raw_body = await request.body()
    try:
        event = gateway.verify_webhook(raw_body, stripe_signature)
    except SignatureInvalid as exc:
        return PlainTextResponse(f"Webhook Error: {exc}", status_code=exc.status_code)

    await workflow.on_payment_confirmed(event)
    return WebhookAck()


@app.post("/upload", response_class=HTMLResponse)
async def upload(
    session_id: Optional[str] = Form(default=None),
    name: Optional[str] = Form(default=None),
    contest: Optional[str] = Form(default=None),
    triviaAnswers: Optional[str] = Form(default=None),
    timeTaken: Optional[str] = Form(default=None),
    file: Optional[UploadFile] = File(default=None),
):
    uploaded = None
    if file is not None and file.filename:
        # one byte past the limit is enough for the size check
        uploaded = UploadedFile(
            filename=file.filename,
            content=await file.read(settings.MAX_UPLOAD_BYTES + 1),
            content_type=file.content_type,
        )

    form = SubmissionForm(
        name=name,
        contest=contest,
        trivia_answers=triviaAnswers,
        time_taken=timeTaken,
        file=uploaded,
    )
    submission = await workflow.submit(session_id, form)

    if submission.is_trivia:
        return _confirmation_page("Trivia Submission Successful", "Trivia Submission Successful!")
    return _confirmation_page("Upload Successful", "Upload Successful!")


@app.get("/api/trivia")
async def get_trivia(slug: Optional[str] = None):
    return await trivia_bank.public_questions(slug)


@app.get("/api/admin/entries")
async def admin_entries(_: None = Depends(require_admin)):
    return await ledger.list_all()


@app.get("/api/admin/uploads")
async def admin_uploads(_: None = Depends(require_admin)):
    docs = await submissions.list_all()
    for doc in docs:
        if doc.get("savedFilename"):
            doc["fileUrl"] = await blob_store.file_url(doc["savedFilename"])
    return docs


@app.post("/api/admin/reconcile", response_model=ReconcileOut)
async def admin_reconcile(_: None = Depends(require_admin)):
    return ReconcileOut(closed_sessions=await workflow.reconcile())
