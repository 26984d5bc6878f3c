import re
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from .models import AttendanceStatus, UserRole


PHONE_PATTERN = r"^[0-9]{10}$"
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


class _EmailMixin(BaseModel):
    @field_validator("email", check_fields=False)
    @classmethod
    def _check_email(cls, value: str | None) -> str | None:
        if value is None:
            return value
        normalized = value.strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            raise ValueError("Invalid email format")
        return normalized


# --- auth ---


class SendOtpRequest(BaseModel):
    phone: str = Field(pattern=PHONE_PATTERN)
    role: UserRole


class VerifyOtpRequest(BaseModel):
    phone: str = Field(pattern=PHONE_PATTERN)
    otp: str = Field(pattern=r"^[0-9]{6}$")
    password: str = Field(min_length=6, max_length=72)


class LoginRequest(BaseModel):
    phone: str = Field(pattern=PHONE_PATTERN)
    password: str = Field(min_length=1, max_length=72)
    role: UserRole


class ChangePasswordRequest(BaseModel):
    old_password: str | None = Field(default=None, min_length=1, max_length=72)
    new_password: str = Field(min_length=6, max_length=72)


# --- admin ---


class TeacherCreateRequest(_EmailMixin):
    full_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(pattern=PHONE_PATTERN)
    email: str | None = None
    address: str | None = None
    subject_group: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=6, max_length=72)
    teacher_code: str | None = Field(default=None, max_length=20)


class TeacherUpdateRequest(_EmailMixin):
    full_name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = None
    address: str | None = None
    subject_group: str | None = Field(default=None, min_length=1, max_length=100)
    teacher_code: str | None = Field(default=None, max_length=20)


class HomeroomAssignRequest(BaseModel):
    room_id: int


class StudentCreateRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(pattern=PHONE_PATTERN)
    student_id: str = Field(min_length=1, max_length=20)
    room_id: int
    student_number: int | None = None
    parent_id: int | None = None


class StudentUpdateRequest(BaseModel):
    full_name: str | None = Field(default=None, min_length=1, max_length=255)
    room_id: int | None = None
    student_number: int | None = None
    parent_id: int | None = None


class ParentCreateRequest(_EmailMixin):
    full_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(pattern=PHONE_PATTERN)
    relationship: str | None = Field(default=None, max_length=50)
    email: str | None = None
    address: str | None = None


class ParentUpdateRequest(_EmailMixin):
    full_name: str | None = Field(default=None, min_length=1, max_length=255)
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    relationship: str | None = Field(default=None, max_length=50)
    email: str | None = None
    address: str | None = None


class RoomCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    grade_level: int
    room_number: int
    capacity: int = Field(default=40, gt=0)
    academic_year: str = Field(min_length=1, max_length=10)


class RoomUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    grade_level: int | None = None
    room_number: int | None = None
    capacity: int | None = Field(default=None, gt=0)
    academic_year: str | None = Field(default=None, min_length=1, max_length=10)


class SubjectCreateRequest(BaseModel):
    subject_code: str = Field(min_length=1, max_length=20)
    subject_name: str = Field(min_length=1, max_length=255)
    subject_group: str | None = Field(default=None, max_length=100)
    credits: Decimal | None = None


# --- teacher ---


class TeacherProfileUpdateRequest(_EmailMixin):
    email: str | None = None
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    profile_picture: str | None = None


class SubjectAssignRequest(BaseModel):
    subject_id: int


class RoomAssignRequest(BaseModel):
    room_id: int


class AttendanceEntry(BaseModel):
    student_id: int
    status: AttendanceStatus


class HomeroomAttendanceRequest(BaseModel):
    room_id: int
    attendance_date: date
    attendance_list: list[AttendanceEntry]


class SubjectAttendanceRequest(HomeroomAttendanceRequest):
    subject_id: int
    period_number: int = Field(ge=1, le=10)


class GradeEntry(BaseModel):
    student_id: int
    score_1: Decimal = Decimal("0")
    score_2: Decimal = Decimal("0")
    score_3: Decimal = Decimal("0")
    score_4: Decimal = Decimal("0")
    midterm_score: Decimal = Decimal("0")
    final_score: Decimal = Decimal("0")


class GradeBatchRequest(BaseModel):
    room_id: int
    subject_id: int
    grades: list[GradeEntry]


class GradeSheetRequest(BaseModel):
    room_id: int
    subject_id: int


class HomeVisitCreateRequest(BaseModel):
    student_id: int
    visit_date: date
    latitude: Decimal | None = None
    longitude: Decimal | None = None
    maps_url: str | None = None
    notes: str = Field(min_length=1)
    report_pdf: str | None = None


class StudentPhotoRequest(BaseModel):
    profile_picture: str = Field(min_length=1)


# --- student ---


class HealthRecordRequest(BaseModel):
    blood_type: str | None = Field(default=None, max_length=5)
    height: Decimal | None = None
    weight: Decimal | None = None
    allergies: str | None = None
    chronic_diseases: str | None = None
    medications: str | None = None
    emergency_contact_name: str | None = Field(default=None, max_length=255)
    emergency_contact_phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    notes: str | None = None
