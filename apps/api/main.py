import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Tuple

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import get_current_user, get_verifier
from config import ALLOWED_ORIGINS, FIREBASE_PROJECT_ID, LOG_LEVEL, PORT
from database import check_connection, create_tables, get_db
from identity import AuthError, IdentityVerifier
from schemas import (
    AuthTestResponse, HealthResponse, MessageResponse, PhotoCategory, Principal,
    ProfileUpdate, StoredPhotoResponse, TryOnPayload, UserResponse,
    ValidationErrorDetail, ValidationErrorResponse,
)
from storage import PhotoStorage, StorageError, configure_cloudinary
from tryon import TryOnError, TryOnGateway, TryOnRequest
from users import PersistenceError, count_users, get_user, update_display_name

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared collaborators once and hand them to the routes"""
    create_tables()

    app.state.verifier = IdentityVerifier(FIREBASE_PROJECT_ID)
    if not app.state.verifier.ready:
        logger.error("FIREBASE_PROJECT_ID is not set - protected routes will answer 503")

    app.state.gateway = TryOnGateway()
    if not app.state.gateway.configured:
        logger.warning("SEGMIND_API_KEY is not set - try-on requests will answer 503")

    app.state.storage = PhotoStorage(enabled=configure_cloudinary())

    logger.info("Virtual Try-On API ready")
    yield
    logger.info("Shutting down Virtual Try-On API")


app = FastAPI(title="Virtual Try-On API", version="1.0.0", lifespan=lifespan)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "x-api-key"],
)


def get_gateway(request: Request) -> TryOnGateway:
    return request.app.state.gateway


def get_storage(request: Request) -> PhotoStorage:
    return request.app.state.storage


# ---------- Error handlers ----------
@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


@app.exception_handler(TryOnError)
async def tryon_error_handler(request: Request, exc: TryOnError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = ValidationErrorResponse(errors=[
        ValidationErrorDetail(loc=[str(part) for part in error.get("loc", ())], msg=error.get("msg", ""))
        for error in exc.errors()
    ])
    return JSONResponse(status_code=422, content=body.model_dump())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Server error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# ---------- Public endpoints ----------
@app.get("/api/hello", response_model=MessageResponse)
def hello():
    return {"message": "Hello from the server!"}


@app.get("/health", response_model=HealthResponse)
def health(
    db: Session = Depends(get_db),
    verifier: IdentityVerifier = Depends(get_verifier),
    gateway: TryOnGateway = Depends(get_gateway),
    storage: PhotoStorage = Depends(get_storage),
):
    """Datastore reachability decides the status; the rest is informational"""
    try:
        check_connection(db)
        database = "connected"
    except SQLAlchemyError as e:
        logger.error("Health check database error: %s", e)
        database = "unavailable"

    services = {
        "database": database,
        "identity": "ready" if verifier.ready else "unconfigured",
        "tryon": "configured" if gateway.configured else "unconfigured",
        "storage": "configured" if storage.enabled else "unconfigured",
    }
    if database != "connected":
        return JSONResponse(status_code=503, content={"status": "degraded", "services": services})
    return {"status": "ok", "services": services}


@app.get("/api/db-status")
def db_status(db: Session = Depends(get_db)):
    try:
        check_connection(db)
        users = count_users(db)
    except (SQLAlchemyError, PersistenceError) as e:
        logger.error("Database status check error: %s", e)
        return JSONResponse(status_code=500, content={"status": "disconnected", "error": "Database connection failed"})

    url = db.get_bind().url
    return {
        "status": "connected",
        "engine": url.get_backend_name(),
        "database": url.database,
        "users": users,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


# ---------- User endpoints ----------
@app.get("/api/auth/test", response_model=AuthTestResponse)
def auth_test(current_user: Principal = Depends(get_current_user)):
    return {"message": "Auth successful", "user": current_user}


@app.get("/api/user/profile", response_model=UserResponse)
def get_user_profile(
    current_user: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get current user profile"""
    try:
        user = get_user(db, current_user.id)
    except PersistenceError as e:
        logger.error("Error fetching user profile: %s", e)
        return JSONResponse(status_code=500, content={"error": "Error fetching user profile"})

    if user is None:
        return JSONResponse(status_code=404, content={"error": "User not found"})
    return user


@app.put("/api/user/profile", response_model=MessageResponse)
def update_user_profile(
    update: ProfileUpdate,
    current_user: Principal = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update the display name"""
    try:
        updated = update_display_name(db, current_user.id, update.display_name)
    except PersistenceError as e:
        logger.error("Error updating profile: %s", e)
        return JSONResponse(status_code=500, content={"error": "Error updating profile"})

    if not updated:
        return JSONResponse(status_code=404, content={"error": "User not found"})
    return {"message": "Profile updated successfully"}


# ---------- Try-on ----------
def resolve_images(payload: TryOnPayload, user_id: str, storage: PhotoStorage) -> Tuple[str, str]:
    """Inline images win; stored photos are fetched in parallel and base64 encoded"""
    images = {"model": payload.model_image, "cloth": payload.cloth_image}
    paths = {"model": payload.model_path, "cloth": payload.cloth_path}

    missing = [kind for kind, image in images.items() if not image]
    for kind in missing:
        if not storage.owns(user_id, paths[kind]):
            raise StorageError("Access denied", status_code=403)

    for kind, content in zip(missing, storage.fetch_base64([paths[kind] for kind in missing])):
        images[kind] = content
    return images["model"], images["cloth"]


@app.post(
    "/api/try-on",
    response_class=Response,
    responses={200: {"content": {"image/jpeg": {}}}},
)
def try_on(
    payload: TryOnPayload,
    current_user: Principal = Depends(get_current_user),
    gateway: TryOnGateway = Depends(get_gateway),
    storage: PhotoStorage = Depends(get_storage),
):
    """Run a virtual try-on and return the generated JPEG"""
    model_image, cloth_image = resolve_images(payload, current_user.id, storage)
    logger.info("Try-on requested by %s (category=%s)", current_user.id, payload.category)

    result = gateway.generate(TryOnRequest(
        model_image=model_image,
        garment_image=cloth_image,
        category=payload.category,
        description=payload.garment_description,
    ))
    return Response(content=result.content, media_type=result.content_type, headers=result.usage.as_headers())


# ---------- Photos ----------
@app.get("/api/photos/{category}", response_model=List[StoredPhotoResponse])
def list_photos(
    category: PhotoCategory,
    current_user: Principal = Depends(get_current_user),
    storage: PhotoStorage = Depends(get_storage),
):
    """List the user's photos in a category, newest first"""
    return storage.list_photos(current_user.id, category)


@app.post("/api/photos/{category}", response_model=StoredPhotoResponse)
def upload_photo(
    category: PhotoCategory,
    file: UploadFile = File(...),
    current_user: Principal = Depends(get_current_user),
    storage: PhotoStorage = Depends(get_storage),
):
    """Store a model, cloth or result photo"""
    data = file.file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise StorageError("File too large", status_code=413)
    return storage.upload(current_user.id, category, data)


@app.delete("/api/photos", response_model=MessageResponse)
def delete_photo(
    path: str = Query(...),
    current_user: Principal = Depends(get_current_user),
    storage: PhotoStorage = Depends(get_storage),
):
    if not storage.owns(current_user.id, path):
        raise StorageError("Access denied", status_code=403)
    storage.delete(path)
    return {"message": "Photo deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
