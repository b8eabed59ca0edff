import functools
import io
import json
import logging
import os

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from app import auth, models, schemas, services
from app.database import SessionLocal, create_db_and_tables
from app.errors import AppError, AuthError, ValidationError
from app.repository import FirestoreRepository, Repository, SqlRepository
from app.storage import ImageStore, LocalImageStore, NamedBlob, get_image_store

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOG = logging.getLogger(__name__)

MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("data", "uploads"))

# form fields that carry JSON-encoded arrays
JSON_FORM_FIELDS = ("observations", "observationsToDelete", "deletionIds")
CREATE_IMAGE_FIELDS = ("images", "images[]")

create_db_and_tables()

app = FastAPI(
    title="Health & Safety Reports",
    description="Inspection reports, observations and PDF export for health and safety consultants.",
    version="0.1.0",
)

origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if os.getenv("STORAGE_BACKEND", "local").lower() == "local":
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        LOG.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": services.describe_validation_errors(exc.errors())},
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


async def get_current_user(token: str | None = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> models.User:
    if not token:
        raise AuthError("Unauthorized: No token provided")
    return auth.IdentityProvider(db).verify(token)


@functools.lru_cache(maxsize=1)
def _firestore_repository() -> FirestoreRepository:
    return FirestoreRepository()


def get_repository(db: Session = Depends(get_db)) -> Repository:
    if os.getenv("DB_BACKEND", "").lower() == "firestore":
        return _firestore_repository()
    return SqlRepository(db)


# --- request payloads ---

def _decode_json_field(name: str, value: str):
    try:
        return json.loads(value) if value.strip() else []
    except json.JSONDecodeError as e:
        raise ValidationError(f"{name} must be valid JSON") from e


async def _image_blob(field_name: str, upload: UploadFile) -> NamedBlob:
    content_type = upload.content_type or ""
    if not content_type.startswith("image/"):
        raise ValidationError("Only image files are allowed")
    data = await upload.read(MAX_IMAGE_BYTES + 1)
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationError(f"Image {upload.filename or field_name} exceeds {MAX_IMAGE_BYTES} bytes")
    return NamedBlob(field_name=field_name, filename=upload.filename or "image.jpg", content_type=content_type, data=data)


async def read_payload(request: Request) -> tuple[dict, list[NamedBlob]]:
    """Body fields and uploaded images from a JSON or multipart request.

    Uploaded files are read into memory and the form's temporary files are
    closed before returning, whether or not parsing succeeded.
    """
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data") and not content_type.startswith(
        "application/x-www-form-urlencoded"
    ):
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Request body must be valid JSON") from e
        if not isinstance(data, dict):
            raise ValidationError("Request body must be an object")
        return data, []

    data: dict = {}
    blobs: list[NamedBlob] = []
    form = await request.form()
    try:
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                blobs.append(await _image_blob(key, value))
            elif key in JSON_FORM_FIELDS:
                decoded = _decode_json_field(key, value)
                items = decoded if isinstance(decoded, list) else [decoded]
                data.setdefault(key, []).extend(items)
            else:
                data[key] = value
    finally:
        await form.close()
    return data, blobs


def _files_by_field(blobs: list[NamedBlob]) -> dict[str, NamedBlob]:
    files: dict[str, NamedBlob] = {}
    for blob in blobs:
        if blob.field_name in files:
            raise ValidationError(f"Duplicate file field {blob.field_name}")
        files[blob.field_name] = blob
    return files


# --- routes ---

@app.get("/")
def read_root():
    return {"message": "Health & Safety Reports API", "version": app.version}


@app.post("/api/auth/register", response_model=schemas.RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(request: schemas.RegisterRequest, db: Session = Depends(get_db)):
    user = auth.IdentityProvider(db).register(request.email, request.password, request.name)
    return {"message": "User registered successfully", "user": schemas.User.model_validate(user)}


@app.post("/api/auth/login", response_model=schemas.LoginResponse)
def login(request: schemas.LoginRequest, db: Session = Depends(get_db)):
    user, token, refresh_token = auth.IdentityProvider(db).login(request.email, request.password)
    return schemas.LoginResponse(
        message="Login successful",
        user=schemas.User.model_validate(user),
        token=token,
        refresh_token=refresh_token,
    )


@app.post("/api/auth/refresh", response_model=schemas.LoginResponse)
def refresh(request: schemas.RefreshRequest, db: Session = Depends(get_db)):
    user, token, refresh_token = auth.IdentityProvider(db).refresh(request.refresh_token)
    return schemas.LoginResponse(
        message="Token refreshed",
        user=schemas.User.model_validate(user),
        token=token,
        refresh_token=refresh_token,
    )


@app.get("/api/auth/me", response_model=schemas.User)
async def read_me(current_user: models.User = Depends(get_current_user)):
    return current_user


@app.get("/api/companies", response_model=list[schemas.Company])
async def list_companies(
    repo: Repository = Depends(get_repository),
    current_user: models.User = Depends(get_current_user),
):
    return await services.list_companies(repo, current_user.id)


@app.post("/api/companies", response_model=schemas.Company, status_code=status.HTTP_201_CREATED)
async def create_company(
    company: schemas.CompanyCreate,
    repo: Repository = Depends(get_repository),
    current_user: models.User = Depends(get_current_user),
):
    return await services.create_company(repo, company, current_user.id)


@app.get("/api/companies/{company_id}", response_model=schemas.Company)
async def get_company(
    company_id: str,
    repo: Repository = Depends(get_repository),
    current_user: models.User = Depends(get_current_user),
):
    return await services.get_company(repo, company_id, current_user.id)


@app.put("/api/companies/{company_id}", response_model=schemas.Company)
async def update_company(
    company_id: str,
    company: schemas.CompanyUpdate,
    repo: Repository = Depends(get_repository),
    current_user: models.User = Depends(get_current_user),
):
    return await services.update_company(repo, company_id, company, current_user.id)


@app.delete("/api/companies/{company_id}", response_model=schemas.MessageResponse)
async def delete_company(
    company_id: str,
    repo: Repository = Depends(get_repository),
    current_user: models.User = Depends(get_current_user),
):
    await services.remove_company_association(repo, company_id, current_user.id)
    return {"message": "Company association removed successfully"}


@app.get("/api/reports", response_model=list[schemas.Report])
async def list_reports(
    company_id: str | None = Query(None, alias="companyId"),
    status_filter: str | None = Query(None, alias="status"),
    repo: Repository = Depends(get_repository),
    current_user: models.User = Depends(get_current_user),
):
    return await services.list_reports(repo, current_user.id, company_id=company_id, status=status_filter)


@app.get("/api/reports/{report_id}", response_model=schemas.Report)
async def get_report(
    report_id: str,
    repo: Repository = Depends(get_repository),
    current_user: models.User = Depends(get_current_user),
):
    return await services.get_report(repo, report_id, current_user.id)


@app.post("/api/reports", response_model=schemas.Report, status_code=status.HTTP_201_CREATED)
async def create_report(
    request: Request,
    repo: Repository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
    current_user: models.User = Depends(get_current_user),
):
    data, blobs = await read_payload(request)
    payload = services.validate_model(schemas.ReportCreate, data)
    images = [b for b in blobs if b.field_name in CREATE_IMAGE_FIELDS]
    return await services.create_report(repo, store, payload, images, current_user.id)


@app.put("/api/reports/{report_id}", response_model=schemas.Report)
async def update_report(
    report_id: str,
    request: Request,
    repo: Repository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
    current_user: models.User = Depends(get_current_user),
):
    data, blobs = await read_payload(request)
    payload = services.validate_model(schemas.ReportUpdate, data)
    return await services.update_report(repo, store, report_id, payload, _files_by_field(blobs), current_user.id)


@app.delete("/api/reports/{report_id}", response_model=schemas.MessageResponse)
async def delete_report(
    report_id: str,
    repo: Repository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
    current_user: models.User = Depends(get_current_user),
):
    await services.delete_report(repo, store, report_id, current_user.id)
    return {"message": "Report deleted successfully"}


@app.get("/api/pdf/{report_id}")
async def export_report_pdf(
    report_id: str,
    repo: Repository = Depends(get_repository),
    store: ImageStore = Depends(get_image_store),
    current_user: models.User = Depends(get_current_user),
):
    """Render the report as a downloadable PDF."""
    link_callback = store.resolve_link if isinstance(store, LocalImageStore) else None
    pdf_bytes = await services.render_report_pdf(repo, report_id, current_user.id, link_callback=link_callback)
    return StreamingResponse(
        io.BytesIO(pdf_bytes),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f"attachment; filename=\"report_{report_id}.pdf\"",
            "Content-Length": str(len(pdf_bytes)),
        },
    )
