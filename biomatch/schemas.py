"""
Pydantic models for API request/response schemas

Subject labels travel through the matching core as structured values and
are only serialized here, at the API boundary.
"""
from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional, Union
from datetime import datetime


class EnrollmentUpsert(BaseModel):
    """Schema for creating or replacing an enrollment"""
    display_name: str = Field(..., min_length=1, max_length=255, description="Subject display name")
    image_refs: List[str] = Field(default_factory=list, description="Ordered blob references of enrollment images")

    class Config:
        json_schema_extra = {
            "example": {
                "display_name": "Ana Torres",
                "image_refs": [
                    "users/u-123/uploads/front.jpg",
                    "users/u-123/uploads/side.jpg"
                ]
            }
        }


class Enrollment(BaseModel):
    """Schema for an enrollment record response"""
    subject_id: str = Field(..., description="Subject identifier")
    display_name: str = Field(..., description="Subject display name")
    image_refs: List[str] = Field(..., description="Blob references of enrollment images")
    created_at: Optional[datetime] = Field(default=None, description="When the subject was enrolled")
    updated_at: Optional[datetime] = Field(default=None, description="Last change to the record")


class EnrollmentList(BaseModel):
    """Schema for listing all enrollments"""
    total_count: int = Field(..., description="Total number of enrollments")
    records: List[Enrollment] = Field(..., description="Enrollment records")


class RecognizedPerson(BaseModel):
    """Serialized subject label"""
    uid: str = Field(..., description="Subject identifier")
    name: str = Field(..., description="Subject display name")
    image_refs: List[str] = Field(..., description="Images the subject is indexed with")


class RecognizeResponse(BaseModel):
    """Schema for the best-match response"""
    recognized: bool = Field(..., description="Whether the best candidate is closer than the threshold")
    recognized_person: Union[RecognizedPerson, Literal["unknown"]] = Field(..., description="Matched subject or 'unknown'")
    confidence: Optional[float] = Field(
        default=None, ge=0, le=1,
        description="1 - distance, clamped to [0, 1]; decreases with distance, not a probability"
    )
    distance: Optional[float] = Field(default=None, description="Combined distance of the best candidate")
    modality_distances: Dict[str, float] = Field(default_factory=dict, description="Per-modality distances of the best candidate")
    snapshot_sequence: int = Field(..., description="Index snapshot the query ran against")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")
    message: str = Field(default="Image analyzed")

    class Config:
        json_schema_extra = {
            "example": {
                "recognized": True,
                "recognized_person": {
                    "uid": "u-123",
                    "name": "Ana Torres",
                    "image_refs": ["users/u-123/uploads/front.jpg"]
                },
                "confidence": 0.74,
                "distance": 0.26,
                "modality_distances": {"face": 0.2, "iris": 0.3, "ear": 0.4},
                "snapshot_sequence": 3,
                "processing_time_ms": 180.4,
                "message": "Image analyzed"
            }
        }


class SimilarFace(BaseModel):
    """Schema for one ranked candidate"""
    recognized_person: RecognizedPerson
    distance: float = Field(..., description="Combined distance (lower is closer)")
    rank: int = Field(..., ge=1, description="1-based position in the ranking")
    index: int = Field(..., ge=0, description="Which of the subject's images matched")
    modality_distances: Dict[str, float] = Field(default_factory=dict)


class SimilarFacesResponse(BaseModel):
    """Schema for the top-N response"""
    similar_faces: List[SimilarFace]
    snapshot_sequence: int
    processing_time_ms: float
    message: str = Field(default="Image analyzed")


class RebuildResponse(BaseModel):
    """Schema for a manual rebuild"""
    success: bool
    message: str
    snapshot_sequence: int
    subjects: int
    bundles: int
    pending_write_backs: int = Field(default=0, description="Directory write-backs still running")
    processing_time_ms: float


class DeleteResponse(BaseModel):
    """Schema for delete enrollment response"""
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Status message")
    deleted_id: Optional[str] = Field(default=None, description="Subject id of the deleted enrollment")


class ErrorResponse(BaseModel):
    """Schema for error responses"""
    error: str = Field(..., description="Error type")
    detail: str = Field(..., description="Detailed error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "NoSubjectDetected",
                "detail": "No subject detected in the submitted image"
            }
        }
