import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

import external_api
import session as sess
import settings
from external_api import ExtractionError, LedgerError
from session import SessionState, SubmissionError

settings.configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One entry per open form. Handlers are async and never await between reading
# and writing an entry, so each mutation lands as a whole.
SESSIONS: Dict[str, SessionState] = {}


class UserPayload(BaseModel):
    id: str
    name: str
    color: Optional[str] = None


class SharePayload(BaseModel):
    userId: str
    percentage: float = 0


class ProductPayload(BaseModel):
    id: Optional[str] = None
    name: str
    price: Union[str, float] = "$0.00"
    shares: List[SharePayload] = Field(default_factory=list)


class TaxPayload(BaseModel):
    rate: float = 0
    amount: Union[str, float] = "0.00"


class CreateSessionRequest(BaseModel):
    group_id: str = ""
    users: List[UserPayload] = Field(default_factory=list)
    products: List[ProductPayload] = Field(default_factory=list)
    tax: Optional[TaxPayload] = None
    subtotal: Optional[Union[str, float]] = None
    total: Optional[Union[str, float]] = None
    primary_receipt_path: Optional[str] = None
    all_receipt_paths: List[str] = Field(default_factory=list)
    extraction: Optional[Dict[str, Any]] = None


class ToggleRequest(BaseModel):
    item_id: str
    user_id: str


class AssignAllRequest(BaseModel):
    user_id: str
    item_id: Optional[str] = None


class ShareRequest(BaseModel):
    item_id: str
    user_id: str
    percentage: float


class ShareAmountRequest(BaseModel):
    item_id: str
    user_id: str
    amount: Union[str, float]


class ItemRequest(BaseModel):
    item_id: str


class DetailsRequest(BaseModel):
    payer: Optional[str] = None
    description: Optional[str] = None
    group_id: Optional[str] = None


def find_duplicate(ids: List[str]) -> Optional[str]:
    seen = set()
    for value in ids:
        if value in seen:
            return value
        seen.add(value)
    return None


def normalize_create_request(req: CreateSessionRequest) -> Dict[str, Any]:
    if req.extraction is not None:
        return external_api.normalize_extraction(req.extraction, req.group_id)
    data = req.model_dump()

    duplicate_user = find_duplicate([user["id"] for user in data["users"]])
    if duplicate_user is not None:
        raise HTTPException(status_code=400, detail=f"Duplicate user id: {duplicate_user}")
    given_ids = [product["id"] for product in data["products"] if product.get("id")]
    duplicate_item = find_duplicate(given_ids)
    if duplicate_item is not None:
        raise HTTPException(status_code=400, detail=f"Duplicate product id: {duplicate_item}")

    users = []
    for idx, user in enumerate(data["users"]):
        user["color"] = user.get("color") or external_api.color_for_index(idx)
        users.append(user)
    taken = set(given_ids)
    products = []
    for idx, product in enumerate(data["products"]):
        if not product.get("id"):
            # Positional ids, skipping any an explicit product already holds.
            candidate, suffix = str(idx), 1
            while candidate in taken:
                candidate, suffix = f"{idx}_{suffix}", suffix + 1
            product["id"] = candidate
            taken.add(candidate)
        if not isinstance(product["price"], str):
            product["price"] = f"${float(product['price']):.2f}"
        products.append(product)
    data["users"] = users
    data["products"] = products
    if data.get("tax") is not None:
        data["tax"]["amount"] = str(data["tax"]["amount"])
    data.pop("extraction", None)
    return data


def get_session(session_id: str) -> SessionState:
    state = SESSIONS.get(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return state


def session_response(session_id: str, state: SessionState) -> Dict[str, Any]:
    return {
        "session_id": session_id,
        "state": sess.to_dict(state),
        "summary": sess.summarize(state),
    }


def open_session(extraction: Dict[str, Any]) -> str:
    session_id = str(uuid.uuid4())[:8]
    SESSIONS[session_id] = sess.load_extraction(SessionState(), extraction)
    logger.info(
        "Opened session %s with %d items and %d users",
        session_id,
        len(SESSIONS[session_id].allocations),
        len(SESSIONS[session_id].users),
    )
    return session_id


def apply(session_id: str, reducer, *args, **kwargs) -> Dict[str, Any]:
    state = reducer(get_session(session_id), *args, **kwargs)
    SESSIONS[session_id] = state
    return session_response(session_id, state)


@app.get("/")
async def home():
    return {"message": "Receipt split backend. Use the API endpoints directly."}


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "split_api_base_url": settings.SPLIT_API_BASE_URL,
        "open_sessions": len(SESSIONS),
    }


@app.get("/version")
async def version():
    return {"app": settings.APP_NAME, "version": settings.APP_VERSION}


@app.get("/groups")
async def list_groups():
    groups = await run_in_threadpool(external_api.fetch_groups)
    return {"status": "success", "groups": groups}


@app.post("/receipts/scan")
async def scan_receipts(files: List[UploadFile] = File(...), group_id: str = Form("")):
    uploads = []
    for upload in files:
        content_type = upload.content_type or ""
        if not content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail="Please select only image files")
        uploads.append((upload.filename or "receipt", await upload.read(), content_type))
    if not uploads:
        raise HTTPException(status_code=400, detail="Please select at least one image first")

    try:
        extraction = await run_in_threadpool(external_api.analyze_receipts, uploads, group_id)
    except ExtractionError as e:
        logger.error("Error processing images: %s", e)
        raise HTTPException(status_code=502, detail="Failed to process images")

    session_id = open_session(extraction)
    return {"success": True, **session_response(session_id, SESSIONS[session_id])}


@app.post("/session/create")
async def create_session(req: CreateSessionRequest):
    try:
        extraction = normalize_create_request(req)
    except ExtractionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    session_id = open_session(extraction)
    return session_response(session_id, SESSIONS[session_id])


@app.get("/session/{session_id}")
async def session_state(session_id: str):
    return session_response(session_id, get_session(session_id))


@app.delete("/session/{session_id}")
async def close_session(session_id: str):
    get_session(session_id)
    del SESSIONS[session_id]
    logger.info("Closed session %s", session_id)
    return {"success": True, "session_id": session_id}


@app.get("/session/{session_id}/summary")
async def session_summary(session_id: str, format: str = Query("full")):
    summary = sess.summarize(get_session(session_id))
    if format == "compact":
        summary.pop("items", None)
        summary.pop("unassigned_items", None)
    return {"session_id": session_id, **summary}


@app.post("/session/{session_id}/toggle")
async def toggle_assignment(session_id: str, req: ToggleRequest):
    return apply(session_id, sess.toggle_assignment, req.item_id, req.user_id)


@app.post("/session/{session_id}/assign-all")
async def assign_all(session_id: str, req: AssignAllRequest):
    return apply(session_id, sess.assign_all_to_one, req.user_id, req.item_id)


@app.post("/session/{session_id}/split-all")
async def split_all(session_id: str):
    return apply(session_id, sess.split_all_equally)


@app.post("/session/{session_id}/share")
async def update_share(session_id: str, req: ShareRequest):
    return apply(session_id, sess.update_share_percentage, req.item_id, req.user_id, req.percentage)


@app.post("/session/{session_id}/share-amount")
async def update_share_amount(session_id: str, req: ShareAmountRequest):
    return apply(session_id, sess.update_share_amount, req.item_id, req.user_id, req.amount)


@app.post("/session/{session_id}/distribute")
async def distribute(session_id: str, req: ItemRequest):
    return apply(session_id, sess.distribute_equally, req.item_id)


@app.post("/session/{session_id}/balance")
async def balance(session_id: str, req: ItemRequest):
    return apply(session_id, sess.balance_remaining_percentage, req.item_id)


@app.post("/session/{session_id}/details")
async def update_details(session_id: str, req: DetailsRequest):
    state = get_session(session_id)
    if req.payer is not None:
        state = sess.set_payer(state, req.payer)
    if req.description is not None:
        state = sess.set_description(state, req.description)
    if req.group_id is not None:
        state = sess.select_group(state, req.group_id)
    SESSIONS[session_id] = state
    return session_response(session_id, state)


@app.post("/session/{session_id}/reset")
async def reset_session(session_id: str):
    return apply(session_id, sess.reset)


@app.post("/session/{session_id}/submit")
async def submit_expense(session_id: str):
    state = get_session(session_id)
    try:
        sess.validate_submission(state)
    except SubmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    expense_request = sess.build_expense_request(state)
    try:
        expense_id = await run_in_threadpool(external_api.create_expense, expense_request)
    except LedgerError as e:
        logger.error("Error creating expense for session %s: %s", session_id, e)
        raise HTTPException(status_code=502, detail="Failed to create expense")

    # The submitted form is cleared even if another request edited it meanwhile.
    # A session closed during the ledger call stays closed.
    cleared = sess.reset(SESSIONS.get(session_id, state))
    if session_id in SESSIONS:
        SESSIONS[session_id] = cleared
    return {
        "success": True,
        "message": "Expense created successfully",
        "expense_id": expense_id,
        "expense": expense_request,
        **session_response(session_id, cleared),
    }
