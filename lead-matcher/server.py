#!/usr/bin/env python3
"""
Lead Matcher API — FastAPI + httpx + Polars
Resolve pasted customer names against the CRM, group the matching leads,
enrich them with contract totals, and validate jobs by id or customer name.
"""

import argparse
import io
import logging
import os
import secrets
import time
from typing import Any, AsyncIterator, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contract_enrichment import ResultRow, assemble_rows, build_contract_map
from crm_client import CrmClient, load_crm_settings
from job_validation import ValidationFailure, validate_batch, validate_by_job_id, validate_by_lead_name
from lead_aggregator import aggregate, group_by_matched_queries
from lead_resolver import resolve_candidates, resolve_names
from name_import import names_from_csv, rows_to_csv_bytes
from name_parsing import build_candidates, sanitize_record, segment_names


logger = logging.getLogger(__name__)

app = FastAPI(title="Lead Matcher")

# Tests swap in an httpx.MockTransport here.
app.state.crm_transport = None

APP_BOOT_TS = time.time()
UPLOAD_CHUNK_SIZE = 1024 * 1024
MIN_IDENTIFIER_LENGTH = 3


def _max_upload_bytes() -> int:
    return int(os.getenv("LEAD_MATCHER_MAX_UPLOAD_MB", "10")) * 1024 * 1024


def _api_secret() -> str:
    return str(os.getenv("LEAD_MATCHER_API_SECRET") or os.getenv("API_SECRET") or "")


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    settings = load_crm_settings()
    logger.info("Lead Matcher starting against %s", settings.base_url)
    if not _api_secret():
        logger.warning("No API secret configured; every authenticated route will return 401")


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)},
    )


# ---------------------------------------------------------------------------
# Dependencies & helpers
# ---------------------------------------------------------------------------

async def require_bearer(request: Request) -> None:
    """Reject requests whose bearer token does not match the configured secret."""
    secret = _api_secret()
    header = request.headers.get("authorization") or ""
    if not secret or not secrets.compare_digest(header.encode(), f"Bearer {secret}".encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def get_crm_client(request: Request) -> AsyncIterator[CrmClient]:
    """Open a CRM session that forwards the caller's cookie (or the configured one)."""
    settings = load_crm_settings()
    cookie = request.headers.get("cookie") or settings.cookie
    async with CrmClient(settings, cookie=cookie, transport=request.app.state.crm_transport) as client:
        yield client


async def _read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body.") from exc


def _input_text(body: Any) -> str:
    text = body.get("input") if isinstance(body, dict) else None
    if not text or not isinstance(text, str):
        raise HTTPException(status_code=400, detail="Invalid input")
    return text


def _require_identifier(value: Optional[str], message: str, min_length: int = MIN_IDENTIFIER_LENGTH) -> str:
    clean = str(value or "").strip()
    if len(clean) < min_length:
        raise HTTPException(status_code=400, detail=message)
    return clean


UPLOAD_EXTENSIONS = (".csv", ".tsv", ".txt")


def check_upload_name(file_name: Optional[str]) -> None:
    """Name lists are accepted as delimited text only."""
    if file_name and not file_name.lower().endswith(UPLOAD_EXTENSIONS):
        raise HTTPException(status_code=400, detail="Name lists must be uploaded as .csv, .tsv or .txt.")


async def read_name_list(file: UploadFile) -> bytes:
    """Buffer an uploaded name list, refusing it once it grows past the configured limit."""
    check_upload_name(file.filename)
    limit = _max_upload_bytes()
    buffer = bytearray()
    chunk = await file.read(UPLOAD_CHUNK_SIZE)
    while chunk:
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise HTTPException(
                status_code=413,
                detail=f"Name list is larger than LEAD_MATCHER_MAX_UPLOAD_MB ({limit} bytes).",
            )
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
    if not buffer:
        raise HTTPException(status_code=400, detail="Name list is empty.")
    return bytes(buffer)


async def run_lead_matcher(client: CrmClient, raw_text: str) -> list[ResultRow]:
    """
    Full grouping pipeline for one pasted block.

    segment -> resolve each name (concurrently) -> fold into lead identities
    -> group by matched queries -> enrich contracts -> flatten into rows.
    """
    names = segment_names(raw_text)
    resolutions = await resolve_names(client, names)
    state = aggregate(resolutions)
    groups = group_by_matched_queries(state)
    contract_map = await build_contract_map(client, groups)
    rows = assemble_rows(groups, contract_map)
    logger.info("Matched %d names into %d groups and %d rows", len(names), len(groups), len(rows))
    return rows


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Liveness check; needs no auth and makes no CRM calls."""
    return {
        "ok": True,
        "app": "lead-matcher",
        "uptimeSeconds": round(max(0.0, time.time() - APP_BOOT_TS), 3),
    }


@app.post("/api/lead-matcher", dependencies=[Depends(require_bearer)])
async def lead_matcher(request: Request, client: CrmClient = Depends(get_crm_client)):
    text = _input_text(await _read_json_body(request))
    rows = await run_lead_matcher(client, text)
    return {"results": [row.to_dict() for row in rows]}


@app.post("/api/lead-search", dependencies=[Depends(require_bearer)])
async def lead_search(request: Request, client: CrmClient = Depends(get_crm_client)):
    text = _input_text(await _read_json_body(request))
    rows = await run_lead_matcher(client, text)
    return {"results": [row.to_dict(camel_case=True) for row in rows]}


@app.post("/api/lead-matcher/upload", dependencies=[Depends(require_bearer)])
async def lead_matcher_upload(
    file: UploadFile = File(...),
    column: Optional[str] = Form(None),
    client: CrmClient = Depends(get_crm_client),
):
    """Run the grouping pipeline over the name column of an uploaded CSV."""
    raw = await read_name_list(file)
    try:
        selected, names = names_from_csv(raw, column)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    rows = await run_lead_matcher(client, "\n".join(names))
    return {
        "column": selected,
        "nameCount": len(names),
        "results": [row.to_dict() for row in rows],
    }


@app.post("/api/lead-matcher/export", dependencies=[Depends(require_bearer)])
async def lead_matcher_export(request: Request, client: CrmClient = Depends(get_crm_client)):
    text = _input_text(await _read_json_body(request))
    rows = await run_lead_matcher(client, text)

    buf = io.BytesIO(rows_to_csv_bytes([row.to_dict() for row in rows]))
    return StreamingResponse(
        buf,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=lead_matches.csv"},
    )


@app.get("/api/lead/search", dependencies=[Depends(require_bearer)])
async def lead_search_multiple(names: Optional[str] = None, client: CrmClient = Depends(get_crm_client)):
    raw = _require_identifier(names, "Missing or invalid names")
    input_names = segment_names(raw, split_sub_entries=True)
    resolutions = await resolve_names(client, input_names, track_states=client.settings.track_states)
    results = [resolution.to_dict() for resolution in resolutions]
    return {"count": len(results), "results": results}


@app.post("/api/check", dependencies=[Depends(require_bearer)])
async def check_record(request: Request, client: CrmClient = Depends(get_crm_client)):
    """Classify a structured customer record as found / maybe / not found."""
    body = await _read_json_body(request)
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Missing body")

    candidates = build_candidates(sanitize_record(body))
    if not candidates:
        return {
            "status": "not found",
            "matches": [],
            "note": "No usable search terms could be derived from the input.",
        }

    resolution = await resolve_candidates(client, candidates)
    return resolution.to_dict()


@app.get("/api/contract/get-by-lead", dependencies=[Depends(require_bearer)])
async def contracts_by_lead(id: Optional[str] = None, client: CrmClient = Depends(get_crm_client)):
    lead_id = _require_identifier(id, "Missing or invalid id")
    result = await client.list_contracts_by_lead(lead_id, statuses=client.settings.contract_statuses)
    return {"results": result.payload}


@app.get("/api/contract/search", dependencies=[Depends(require_bearer)])
async def contract_detail(id: Optional[str] = None, client: CrmClient = Depends(get_crm_client)):
    contract_id = _require_identifier(id, "Missing or invalid id")
    result = await client.get_contract_detail(contract_id)
    return {"results": result.payload}


@app.get("/api/job/search", dependencies=[Depends(require_bearer)])
async def job_detail(id: Optional[str] = None, client: CrmClient = Depends(get_crm_client)):
    job_id = _require_identifier(id, "Missing or invalid job id", min_length=1)
    result = await client.get_job_by_id(job_id)
    return {"job": result.payload}


@app.get("/api/validate/by-job-id", dependencies=[Depends(require_bearer)])
async def validate_job_id(id: Optional[str] = None, client: CrmClient = Depends(get_crm_client)):
    job_id = _require_identifier(id, "Missing job ID in query", min_length=1)
    try:
        result = await validate_by_job_id(client, job_id)
    except ValidationFailure as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return {"result": result}


@app.get("/api/validate/by-lead-name", dependencies=[Depends(require_bearer)])
async def validate_lead_name(name: Optional[str] = None, client: CrmClient = Depends(get_crm_client)):
    customer = _require_identifier(name, "Missing customer name", min_length=1)
    try:
        result = await validate_by_lead_name(
            client,
            customer,
            track_states=client.settings.track_states,
            contract_statuses=client.settings.contract_statuses,
        )
    except ValidationFailure as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return {"result": result}


@app.post("/api/validate/batch", dependencies=[Depends(require_bearer)])
async def validate_many(request: Request, client: CrmClient = Depends(get_crm_client)):
    body = await _read_json_body(request)
    if not isinstance(body, list):
        raise HTTPException(status_code=400, detail="Invalid input. Expected an array.")

    entries = [entry if isinstance(entry, dict) else {} for entry in body]
    return await validate_batch(
        client,
        entries,
        track_states=client.settings.track_states,
        contract_statuses=client.settings.contract_statuses,
    )


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Lead Matcher API server.")
    parser.add_argument("--host", default=os.getenv("LEAD_MATCHER_HOST", "127.0.0.1"), help="Bind host")
    parser.add_argument("--port", type=int, default=int(os.getenv("LEAD_MATCHER_PORT", "8000")), help="Bind port")
    parser.add_argument("--log-level", default=os.getenv("LEAD_MATCHER_LOG_LEVEL", "info"), help="Log level")
    return parser


def main() -> None:
    args = _build_arg_parser().parse_args()
    log_level = str(args.log_level).lower()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    import uvicorn

    uvicorn.run(
        app,
        host=str(args.host),
        port=int(args.port),
        log_level=log_level,
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":
    main()
