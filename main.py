import io
import logging
import os
import zipfile
from contextlib import asynccontextmanager

import requests
from PIL import Image, UnidentifiedImageError
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from snapmatch.config import settings
from snapmatch.context import AppContext
from snapmatch.db import Base, make_engine, make_session_factory
from snapmatch.exceptions import (
    AllocationExhausted,
    ConcurrencyConflict,
    ExternalServiceError,
    NoMatchFound,
    NotFoundError,
    PartialFailure,
    SnapmatchError,
    ValidationError,
)
from snapmatch.schemas import (
    AttendeeMatchRecord,
    DeleteResult,
    EventRecord,
    EventSummary,
    ImagePage,
    MatchResult,
    OrganizationSummary,
    StoredImage,
    UploadResult,
    UserRecord,
)
from snapmatch.services import catalog, events, matches, matching, organizations
from snapmatch.services.aggregator import aggregate_for_user
from snapmatch.services.face_search import FaceSearchService
from snapmatch.services.storage import BlobStore

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("snapmatch.api")

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png")

STATUS_BY_ERROR = [
    (NotFoundError, 404),
    (NoMatchFound, 404),
    (ValidationError, 400),
    (ConcurrencyConflict, 409),
    (AllocationExhausted, 503),
    (ExternalServiceError, 502),
    (PartialFailure, 500),
]


def build_context() -> AppContext:
    engine = make_engine(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    blobs = BlobStore.from_settings(settings)
    return AppContext(
        settings=settings,
        session_factory=make_session_factory(engine),
        blobs=blobs,
        face_search=FaceSearchService(blobs, settings),
    )


def create_app(ctx: AppContext | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.ctx = ctx or build_context()
        logger.info("Client handles ready.")
        yield

    app = FastAPI(title="Snapmatch API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=(ctx.settings if ctx else settings).CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SnapmatchError)
    async def snapmatch_error(request: Request, exc: SnapmatchError):
        status = next((code for kind, code in STATUS_BY_ERROR if isinstance(exc, kind)), 500)
        body = {"error": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, PartialFailure):
            body["committed"] = exc.committed
        if status >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(body, status_code=status)

    _register_routes(app)
    return app


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


async def _read_image(upload: UploadFile, max_mb: int) -> bytes:
    if upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported file type: {upload.filename}")
    data = await upload.read()
    if not data:
        raise HTTPException(status_code=400, detail=f"Empty file: {upload.filename}")
    if len(data) > max_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f"{upload.filename} exceeds {max_mb} MB")
    try:
        Image.open(io.BytesIO(data)).verify()
    except (UnidentifiedImageError, OSError):
        raise HTTPException(status_code=400, detail=f"Not a readable image: {upload.filename}")
    return data


class EventCreate(BaseModel):
    owner: str
    name: str = "Untitled Event"
    date: str = ""
    description: str = ""
    email_access: list[str] = Field(default_factory=list)
    anyone_can_upload: bool = False


class EventUpdate(BaseModel):
    # Unknown fields pass through so the service can name them in its 400
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    date: str | None = None
    description: str | None = None
    cover_image: str | None = None
    event_url: str | None = None
    email_access: list[str] | None = None
    anyone_can_upload: bool | None = None
    video_count: int | None = Field(None, ge=0)


class OrganizationCreate(BaseModel):
    name: str
    logo: str | None = None


def _register_routes(app: FastAPI) -> None:
    # ------------------ Events ------------------

    @app.post("/api/events", response_model=EventRecord)
    def create_event(body: EventCreate, ctx: AppContext = Depends(get_ctx)):
        return events.create_event(
            ctx,
            owner=body.owner,
            name=body.name,
            date=body.date,
            description=body.description,
            email_access=body.email_access,
            anyone_can_upload=body.anyone_can_upload,
        )

    @app.get("/api/events/{event_id}", response_model=EventRecord)
    def get_event(event_id: str, ctx: AppContext = Depends(get_ctx)):
        return events.require_event(ctx.session_factory, event_id)

    @app.patch("/api/events/{event_id}", response_model=EventRecord)
    def update_event(event_id: str, body: EventUpdate, ctx: AppContext = Depends(get_ctx)):
        updates = body.model_dump(exclude_unset=True)
        return events.update_event(ctx.session_factory, event_id, updates, max_retries=ctx.settings.STATS_MAX_RETRIES)

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str, ctx: AppContext = Depends(get_ctx)):
        return {"event_id": event_id, "deleted_blobs": catalog.delete_event(ctx, event_id)}

    # ------------------ Images ------------------

    @app.get("/api/events/{event_id}/images", response_model=ImagePage)
    def list_images(event_id: str, page_token: str | None = None, ctx: AppContext = Depends(get_ctx)):
        return catalog.list_images(ctx, event_id, page_token)

    @app.get("/api/events/{event_id}/gallery", response_model=list[StoredImage])
    def gallery(event_id: str, ctx: AppContext = Depends(get_ctx)):
        return catalog.gallery(ctx, event_id)

    @app.post("/api/events/{event_id}/images", response_model=UploadResult)
    async def upload_images(
        event_id: str, files: list[UploadFile] = File(...), ctx: AppContext = Depends(get_ctx)
    ):
        payload = [
            (f.filename or "image.jpg", await _read_image(f, ctx.settings.MAX_UPLOAD_MB), f.content_type)
            for f in files
        ]
        return await run_in_threadpool(catalog.upload_images, ctx, event_id, payload)

    @app.post("/api/events/{event_id}/cover")
    async def upload_cover(event_id: str, file: UploadFile = File(...), ctx: AppContext = Depends(get_ctx)):
        data = await _read_image(file, ctx.settings.MAX_UPLOAD_MB)
        url = await run_in_threadpool(catalog.upload_cover, ctx, event_id, data, file.content_type)
        return {"event_id": event_id, "cover_image": url}

    @app.delete("/api/events/{event_id}/images", response_model=DeleteResult)
    def delete_image(event_id: str, key: str, ctx: AppContext = Depends(get_ctx)):
        return catalog.delete_image(ctx, event_id, key)

    # ------------------ Matching ------------------

    @app.post("/api/events/{event_id}/match", response_model=MatchResult)
    async def match_selfie(
        event_id: str,
        user_id: str = Form(...),
        selfie: UploadFile | None = File(None),
        selfie_key: str | None = Form(None),
        ctx: AppContext = Depends(get_ctx),
    ):
        if selfie is not None:
            data = await _read_image(selfie, ctx.settings.MAX_UPLOAD_MB)
            selfie_key = await run_in_threadpool(
                matching.upload_selfie, ctx, user_id, selfie.filename or "selfie.jpg", data, selfie.content_type
            )
        else:
            selfie_key = await run_in_threadpool(matching.resolve_selfie_key, ctx, user_id, selfie_key)
        return await run_in_threadpool(matching.match_selfie_to_event_id, ctx, user_id, selfie_key, event_id)

    @app.get("/api/events/{event_id}/attendees", response_model=list[AttendeeMatchRecord])
    def event_attendees(event_id: str, ctx: AppContext = Depends(get_ctx)):
        events.require_event(ctx.session_factory, event_id)
        return matches.list_for_event(ctx.session_factory, event_id)

    # ------------------ Users ------------------

    @app.get("/api/users/{user_id}/stats")
    def user_stats(user_id: str, ctx: AppContext = Depends(get_ctx)):
        return {
            "organizer": aggregate_for_user(ctx.session_factory, user_id),
            "attendee": matches.statistics_for_user(ctx.session_factory, user_id),
        }

    @app.get("/api/users/{user_id}/matches", response_model=list[AttendeeMatchRecord])
    def user_matches(user_id: str, ctx: AppContext = Depends(get_ctx)):
        return matches.list_for_user(ctx.session_factory, user_id)

    @app.get("/api/users/{user_id}/matches/{event_id}", response_model=AttendeeMatchRecord)
    def user_event_matches(user_id: str, event_id: str, ctx: AppContext = Depends(get_ctx)):
        record = matches.get_match(ctx.session_factory, user_id, event_id)
        if record is None:
            raise NotFoundError("AttendeeMatch", f"{user_id}/{event_id}")
        return record

    @app.put("/api/users/{user_id}/selfie")
    async def replace_selfie(user_id: str, selfie: UploadFile = File(...), ctx: AppContext = Depends(get_ctx)):
        data = await _read_image(selfie, ctx.settings.MAX_UPLOAD_MB)
        key, report = await run_in_threadpool(
            matching.replace_selfie, ctx, user_id, selfie.filename or "selfie.jpg", data, selfie.content_type
        )
        return {"selfie_key": key, "selfie_url": ctx.blobs.url_for(key), "report": report}

    @app.post("/api/users/{user_id}/organization", response_model=UserRecord)
    def create_organization(user_id: str, body: OrganizationCreate, ctx: AppContext = Depends(get_ctx)):
        return organizations.ensure_organization(ctx, user_id, body.name, body.logo)

    @app.put("/api/users/{user_id}/organization/logo", response_model=UserRecord)
    async def upload_logo(user_id: str, logo: UploadFile = File(...), ctx: AppContext = Depends(get_ctx)):
        data = await _read_image(logo, ctx.settings.MAX_UPLOAD_MB)
        return await run_in_threadpool(
            organizations.upload_logo, ctx, user_id, logo.filename or "logo.png", data, logo.content_type
        )

    @app.get("/api/users/{user_id}/organizations", response_model=list[OrganizationSummary])
    def attendee_organizations(user_id: str, ctx: AppContext = Depends(get_ctx)):
        return organizations.organizations_for_attendee(ctx.session_factory, user_id)

    @app.post("/api/users/{user_id}/organizations/{code}", response_model=OrganizationSummary)
    def join_organization(user_id: str, code: str, ctx: AppContext = Depends(get_ctx)):
        return organizations.join_organization(ctx.session_factory, user_id, code)

    @app.delete("/api/users/{user_id}/organizations/{code}")
    def leave_organization(user_id: str, code: str, ctx: AppContext = Depends(get_ctx)):
        if not organizations.leave_organization(ctx.session_factory, user_id, code):
            raise NotFoundError("OrgLink", f"{user_id}/{code}")
        return {"user_id": user_id, "organization_code": code, "left": True}

    @app.get("/api/organizations/{code}/events", response_model=list[EventSummary])
    def organization_events(code: str, ctx: AppContext = Depends(get_ctx)):
        return organizations.events_for_organization(ctx.session_factory, code)

    # ------------------ Downloads ------------------

    @app.post("/download_zip")
    async def download_zip(request: Request):
        data = await request.json()
        photo_urls = data.get("urls", [])

        if not photo_urls:
            return JSONResponse({"error": "No photo URLs provided."}, status_code=400)

        zip_buffer = io.BytesIO()
        with zipfile.ZipFile(zip_buffer, "w") as zf:
            for i, url in enumerate(photo_urls):
                try:
                    response = requests.get(url, timeout=10)
                except requests.RequestException as e:
                    logger.warning(f"Error fetching {url}: {e}")
                    continue
                if response.status_code == 200:
                    file_extension = os.path.splitext(url)[1] or ".jpg"
                    zf.writestr(f"photo_{i+1}{file_extension}", response.content)

        zip_buffer.seek(0)

        return StreamingResponse(
            zip_buffer,
            media_type="application/zip",
            headers={"Content-Disposition": "attachment; filename=matched_photos.zip"},
        )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}


app = create_app()
