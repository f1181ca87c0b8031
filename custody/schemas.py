from typing import Any, Optional, List
from pydantic import BaseModel, EmailStr, Field, ConfigDict
from datetime import datetime

from .authz import Role
from .models import CaseStatus

# ids end up as object-store path segments
ID_PATTERN = r"^[^/]+$"


class DepartmentCreate(BaseModel):
    id: str = Field(min_length=1, max_length=100, pattern=ID_PATTERN)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)


class DepartmentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)


class DepartmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime
    created_by: Optional[str] = None


class DepartmentDeleted(BaseModel):
    department_id: str
    deleted_cases: int
    deleted_evidence: int
    warnings: List[str] = []


class CaseCreate(BaseModel):
    department: str = Field(min_length=1, max_length=100)
    title: str = Field(min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=20_000)
    status: CaseStatus = CaseStatus.OPEN


class CaseUpdate(BaseModel):
    # department is fixed at creation; sending it is rejected
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=20_000)
    status: Optional[CaseStatus] = Field(default=None, description="New case status")


class NoteCreate(BaseModel):
    text: str = Field(min_length=1, max_length=10_000)


class NoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    case_id: str
    text: str
    created_at: datetime
    created_by: Optional[str] = None


class NotesList(BaseModel):
    items: List[NoteOut]


class CaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    department: str
    title: str
    description: Optional[str] = None
    status: str
    created_at: datetime
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class CaseDetail(CaseOut):
    notes: list[NoteOut] = []


class CaseListResponse(BaseModel):
    items: List[CaseOut]


class CaseDeleted(BaseModel):
    case_id: str
    deleted_evidence: int
    warnings: List[str] = []


class UploadInit(BaseModel):
    case_id: str = Field(min_length=1, max_length=100, pattern=ID_PATTERN)
    file_name: str = Field(min_length=1, max_length=255)
    content_type: Optional[str] = Field(default=None, max_length=100)
    file_size: Optional[int] = Field(default=None, ge=0)


class UploadTicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    evidence_id: str
    upload_url: str
    blob_path: str
    blob_url: str
    starts_on: datetime
    expires_on: datetime


class UploadConfirm(BaseModel):
    evidence_id: str = Field(min_length=1)
    case_id: str = Field(min_length=1)
    description: Optional[str] = Field(default=None, max_length=10_000)
    tags: Optional[List[str]] = Field(default=None, max_length=50)


class TagsUpdate(BaseModel):
    tags: List[str] = Field(max_length=50)


class EvidenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    case_id: str
    department: str | None = None
    file_name: str
    file_type: str
    file_size: int | None = None
    content_type: str | None = None
    blob_path_raw: str
    blob_url_raw: str
    uploaded_at: datetime
    uploaded_by: str | None = None
    description: str | None = None
    user_tags: list[str] = []
    auto_tags: list[str] = []
    tags: list[str] = []
    confirmed_at: datetime | None = None
    status: str
    status_updated_at: datetime
    extracted_text: str | None = None
    ocr_language: str | None = None
    ocr_lines: int | None = None
    processing_error: str | None = None
    processed_at: datetime | None = None


class EvidenceList(BaseModel):
    items: List[EvidenceOut]


class EvidenceStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    status_updated_at: datetime
    processed_at: datetime | None = None
    processing_error: str | None = None
    ocr_lines: int | None = None
    ocr_language: str | None = None


class ReadTicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    evidence_id: str
    read_url: str
    expires_on: datetime


class EvidenceDeleted(BaseModel):
    evidence_id: str
    warnings: List[str] = []


class SearchResponse(BaseModel):
    count: int
    top: int
    skip: int
    results: List[dict[str, Any]]


class UserUpsert(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[EmailStr] = None
    roles: List[Role] = []
    department: Optional[str] = Field(default=None, max_length=100)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str | None = None
    email: str | None = None
    roles: list[str] = []
    department: str | None = None
    created_at: datetime


class Me(BaseModel):
    subject: str
    tenant: str | None = None
    username: str | None = None
    display_name: str | None = None
    roles: list[str]
    department: str | None = None


class IngestItem(BaseModel):
    container: str
    path: str
    outcome: str


class IngestResult(BaseModel):
    items: List[IngestItem]


class ReprocessResult(BaseModel):
    evidence_id: str
    outcome: str
