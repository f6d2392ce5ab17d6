"""
Biomatch Recognition API

Identifies enrolled subjects from a photograph against an in-memory index
that is rebuilt from the enrollment directory whenever it changes.

Endpoints:
- POST /recognize - Best match for a photo, or "unknown"
- POST /recognize-similars - Ranked top-N candidates for a photo
- GET /enrollments - List enrolled subjects
- PUT /enrollments/{subject_id} - Create or replace an enrollment
- DELETE /enrollments/{subject_id} - Remove an enrollment
- POST /maintenance/rebuild-index - Rebuild the index now
"""
import asyncio
import time
import logging
from dataclasses import asdict
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, UploadFile, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from biomatch.config import (
    API_TITLE,
    API_DESCRIPTION,
    API_VERSION,
    DB_CREATE_TABLES,
    LOG_LEVEL,
    MAX_TOP_K,
    MODALITY_WEIGHTS,
    RECOGNITION_THRESHOLD,
    SIMILARITY_BACKEND,
    SUPPORTED_FORMATS,
    TOP_K_MATCHES,
    WRITE_BACK_WAIT_TIMEOUT,
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND
)
from biomatch.schemas import (
    DeleteResponse,
    Enrollment,
    EnrollmentList,
    EnrollmentUpsert,
    ErrorResponse,
    RebuildResponse,
    RecognizedPerson,
    RecognizeResponse,
    SimilarFace,
    SimilarFacesResponse
)
from biomatch.blob_store import FileBlobStore
from biomatch.database import async_session_maker, init_db, close_db
from biomatch.descriptor_index import DescriptorIndex
from biomatch.directory import SqlEnrollmentDirectory
from biomatch.exceptions import ImageDecodeError, NoSubjectDetectedError
from biomatch.features import SubjectLabel
from biomatch.interfaces import BlobStore, EnrollmentDirectory, FeatureExtractor
from biomatch.recognition import RecognitionService
from biomatch.repository import EnrollmentRepository
from biomatch.similarity import Ranker, SimilarityEngine
from biomatch.sync import SyncEngine
from biomatch.vector_store import FaissSimilarityEngine

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def default_ranker() -> Ranker:
    """Ranker selected by SIMILARITY_BACKEND."""
    if SIMILARITY_BACKEND == "faiss":
        return FaissSimilarityEngine(MODALITY_WEIGHTS)
    return SimilarityEngine(MODALITY_WEIGHTS)


def person_from_label(label: SubjectLabel) -> RecognizedPerson:
    return RecognizedPerson(**label.to_dict())


def validate_image_file(file: UploadFile) -> None:
    """Validate uploaded image file."""
    if not file.filename:
        raise HTTPException(
            status_code=400,
            detail="No filename provided"
        )

    # Check file extension
    ext = "." + file.filename.lower().split(".")[-1] if "." in file.filename else ""
    if ext not in SUPPORTED_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file format. Supported: {', '.join(sorted(SUPPORTED_FORMATS))}"
        )

    # Check content type
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail="File must be an image"
        )


async def read_image(file: UploadFile) -> bytes:
    """Validate and read an uploaded photo."""
    validate_image_file(file)

    try:
        image_bytes = await file.read()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Failed to read image: {str(e)}")

    if len(image_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty image file")
    return image_bytes


def create_app(
    session_maker: Optional[async_sessionmaker] = None,
    directory: Optional[EnrollmentDirectory] = None,
    blob_store: Optional[BlobStore] = None,
    extractor: Optional[FeatureExtractor] = None,
    ranker: Optional[Ranker] = None,
    watch_changes: bool = True
) -> FastAPI:
    """
    Build the API application.

    Collaborators left as None get their production defaults: the
    PostgreSQL directory, the file blob store and the DeepFace extractor.

    Args:
        session_maker: Session factory for the enrollments table
        directory: Enrollment directory the index is built from
        blob_store: Storage of enrollment images
        extractor: Feature extractor
        ranker: Similarity ranker
        watch_changes: Consume the directory change stream in the background
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        logger.info("Starting Biomatch Recognition API...")

        sessions = session_maker
        owns_database = sessions is None and directory is None
        if owns_database:
            await init_db(create_tables=DB_CREATE_TABLES)
            sessions = async_session_maker

        enrollment_directory = directory if directory is not None else SqlEnrollmentDirectory(sessions)

        feature_extractor = extractor
        if feature_extractor is None:
            from biomatch.feature_service import DeepFaceExtractor
            feature_extractor = DeepFaceExtractor()
            logger.info(f"Model: {FACE_RECOGNITION_MODEL}")
            logger.info(f"Detector: {FACE_DETECTOR_BACKEND}")

        index = DescriptorIndex()
        sync_engine = SyncEngine(
            index=index,
            directory=enrollment_directory,
            blob_store=blob_store if blob_store is not None else FileBlobStore(),
            extractor=feature_extractor
        )
        recognition = RecognitionService(
            index=index,
            extractor=feature_extractor,
            ranker=ranker if ranker is not None else default_ranker(),
            sync_engine=sync_engine,
            threshold=RECOGNITION_THRESHOLD
        )

        app.state.session_maker = sessions
        app.state.index = index
        app.state.sync_engine = sync_engine
        app.state.recognition = recognition
        app.state.extractor = feature_extractor

        watcher = None
        if watch_changes:
            watcher = asyncio.create_task(sync_engine.run(enrollment_directory.changes()))
        yield

        # Shutdown
        if watcher is not None:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
        await sync_engine.close()
        if owns_database:
            await close_db()
        logger.info("Shutting down Biomatch Recognition API...")

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    register_exception_handlers(app)
    return app


def _session(request: Request) -> AsyncSession:
    session_maker = request.app.state.session_maker
    if session_maker is None:
        raise HTTPException(status_code=503, detail="Directory administration is not available")
    return session_maker()


def register_routes(app: FastAPI) -> None:

    @app.get("/", include_in_schema=False)
    async def root(request: Request):
        """Root endpoint with API info."""
        snapshot = request.app.state.index.current()
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "similarity_backend": SIMILARITY_BACKEND,
            "modality_weights": MODALITY_WEIGHTS,
            "threshold": request.app.state.recognition.threshold,
            "indexed_subjects": len(snapshot),
            "indexed_bundles": snapshot.bundle_count,
            "endpoints": {
                "recognize": "POST /recognize",
                "recognize_similars": "POST /recognize-similars",
                "list": "GET /enrollments",
                "upsert": "PUT /enrollments/{subject_id}",
                "delete": "DELETE /enrollments/{subject_id}"
            }
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        index = request.app.state.index
        sync_engine = request.app.state.sync_engine
        snapshot = index.current()
        stats = asdict(sync_engine.stats)

        status = "healthy"
        if not index.has_published() or stats["last_error"]:
            status = "degraded"

        return {
            "status": status,
            "model_loaded": getattr(request.app.state.extractor, "model_loaded", True),
            "snapshot_sequence": snapshot.sequence,
            "indexed_subjects": len(snapshot),
            "indexed_bundles": snapshot.bundle_count,
            "rebuilding": sync_engine.is_rebuilding,
            "sync": stats
        }

    # ============================================================================
    # RECOGNIZE
    # ============================================================================
    @app.post(
        "/recognize",
        response_model=RecognizeResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid input"},
            422: {"model": ErrorResponse, "description": "No subject detected"}
        },
        summary="Recognize the subject in a photo",
        description="""
        Compare a photo against every enrolled subject and return the best
        match if its combined distance is below the recognition threshold,
        otherwise `"unknown"`.
        """
    )
    async def recognize(
        request: Request,
        photo: UploadFile = File(..., description="Photo of the subject")
    ):
        start_time = time.time()
        image_bytes = await read_image(photo)

        recognition: RecognitionService = request.app.state.recognition
        outcome = await recognition.recognize(image_bytes)

        processing_time = (time.time() - start_time) * 1000
        best = outcome.best
        return RecognizeResponse(
            recognized=outcome.recognized,
            recognized_person=person_from_label(best.label) if outcome.recognized else "unknown",
            confidence=outcome.confidence,
            distance=outcome.distance,
            modality_distances=best.modality_distances if best is not None else {},
            snapshot_sequence=outcome.snapshot_sequence,
            processing_time_ms=round(processing_time, 2)
        )

    @app.post(
        "/recognize-similars",
        response_model=SimilarFacesResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid input"},
            422: {"model": ErrorResponse, "description": "No subject detected"}
        },
        summary="Rank the closest enrolled subjects",
        description="Return the `n` enrolled images closest to the photo, closest first."
    )
    async def recognize_similars(
        request: Request,
        photo: UploadFile = File(..., description="Photo of the subject"),
        n: int = Query(TOP_K_MATCHES, ge=1, le=MAX_TOP_K, description="Number of candidates to return")
    ):
        start_time = time.time()
        image_bytes = await read_image(photo)

        recognition: RecognitionService = request.app.state.recognition
        results = await recognition.recognize_similar(image_bytes, n)

        processing_time = (time.time() - start_time) * 1000
        logger.info(f"Ranked {len(results)} candidate(s) in {processing_time:.1f}ms")
        return SimilarFacesResponse(
            similar_faces=[
                SimilarFace(
                    recognized_person=person_from_label(result.label),
                    distance=result.distance,
                    rank=result.rank,
                    index=result.bundle_index,
                    modality_distances=result.modality_distances
                )
                for result in results
            ],
            snapshot_sequence=results.snapshot_sequence,
            processing_time_ms=round(processing_time, 2)
        )

    # ============================================================================
    # ENROLLMENTS
    # ============================================================================
    @app.get("/enrollments", response_model=EnrollmentList, summary="List enrolled subjects")
    async def list_enrollments(request: Request):
        async with _session(request) as db:
            rows = await EnrollmentRepository.list_all(db)
        records = [EnrollmentRepository.db_to_schema(r) for r in rows]
        return EnrollmentList(total_count=len(records), records=records)

    @app.get(
        "/enrollments/{subject_id}",
        response_model=Enrollment,
        responses={404: {"model": ErrorResponse, "description": "Subject not found"}},
        summary="Get one enrolled subject"
    )
    async def get_enrollment(subject_id: str, request: Request):
        async with _session(request) as db:
            row = await EnrollmentRepository.get(db, subject_id)
        if row is None:
            raise HTTPException(status_code=404, detail=f"Subject '{subject_id}' not found")
        return EnrollmentRepository.db_to_schema(row)

    @app.put(
        "/enrollments/{subject_id}",
        response_model=Enrollment,
        summary="Create or replace an enrollment",
        description="Store the subject and its image references; the index is rebuilt in the background."
    )
    async def upsert_enrollment(subject_id: str, body: EnrollmentUpsert, request: Request):
        async with _session(request) as db:
            row = await EnrollmentRepository.upsert(db, subject_id, body.display_name, body.image_refs)
        request.app.state.sync_engine.request_rebuild()
        return EnrollmentRepository.db_to_schema(row)

    @app.delete(
        "/enrollments/{subject_id}",
        response_model=DeleteResponse,
        responses={404: {"model": ErrorResponse, "description": "Subject not found"}},
        summary="Delete an enrollment"
    )
    async def delete_enrollment(subject_id: str, request: Request):
        async with _session(request) as db:
            deleted = await EnrollmentRepository.delete(db, subject_id)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Subject '{subject_id}' not found")

        request.app.state.sync_engine.request_rebuild()
        return DeleteResponse(
            success=True,
            message=f"Successfully deleted subject '{subject_id}'",
            deleted_id=subject_id
        )

    # ============================================================================
    # MAINTENANCE
    # ============================================================================
    @app.post(
        "/maintenance/rebuild-index",
        response_model=RebuildResponse,
        responses={503: {"model": ErrorResponse, "description": "Rebuild failed"}},
        summary="Rebuild the index",
        description="Rebuild the index from the directory now and wait for it and its directory write-backs to finish."
    )
    async def rebuild_index(request: Request):
        start_time = time.time()
        sync_engine: SyncEngine = request.app.state.sync_engine

        failed_before = sync_engine.stats.rebuilds_failed
        await asyncio.shield(sync_engine.request_rebuild())
        if sync_engine.stats.rebuilds_failed > failed_before:
            raise HTTPException(
                status_code=503,
                detail=f"Rebuild failed: {sync_engine.stats.last_error}"
            )

        if not await sync_engine.wait_for_write_backs(timeout=WRITE_BACK_WAIT_TIMEOUT):
            logger.warning(f"{sync_engine.pending_write_backs} directory write-back(s) still running")

        snapshot = request.app.state.index.current()
        processing_time = (time.time() - start_time) * 1000
        return RebuildResponse(
            success=True,
            message="Index rebuilt successfully",
            snapshot_sequence=snapshot.sequence,
            subjects=len(snapshot),
            bundles=snapshot.bundle_count,
            pending_write_backs=sync_engine.pending_write_backs,
            processing_time_ms=round(processing_time, 2)
        )


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        """Custom HTTP exception handler."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTPException",
                "detail": exc.detail
            }
        )

    @app.exception_handler(NoSubjectDetectedError)
    async def no_subject_handler(request, exc):
        return JSONResponse(
            status_code=422,
            content={
                "error": "NoSubjectDetected",
                "detail": "No subject detected in the provided image. Please submit a clear, frontal photo."
            }
        )

    @app.exception_handler(ImageDecodeError)
    async def image_decode_handler(request, exc):
        return JSONResponse(
            status_code=400,
            content={
                "error": "ImageDecodeError",
                "detail": str(exc)
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """General exception handler."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "detail": "An unexpected error occurred"
            }
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
