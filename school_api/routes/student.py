from datetime import date

from fastapi import APIRouter, Depends

from ..database import Database, get_database
from ..middleware import CurrentUser, require_roles
from ..models import AttendanceType, UserRole
from ..responses import listing, ok
from ..schemas import HealthRecordRequest
from ..services import BUDDHIST_YEAR_SQL, attendance_counts, attendance_stats, get_student, gpa_summary, require_row

router = APIRouter(prefix="/api/student", tags=["Student"])

student_only = require_roles(UserRole.STUDENT)

HEALTH_FIELDS = (
    "blood_type",
    "height",
    "weight",
    "allergies",
    "chronic_diseases",
    "medications",
    "emergency_contact_name",
    "emergency_contact_phone",
    "notes",
)


@router.get("/profile")
async def profile(user: CurrentUser = Depends(student_only), db: Database = Depends(get_database)):
    result = await db.execute(
        """
        SELECT s.*, r.name AS room_name, r.grade_level,
               t.full_name AS homeroom_teacher_name, t.phone AS teacher_phone,
               p.full_name AS parent_name, p.phone AS parent_phone, p.relationship AS parent_relationship
        FROM students s
        LEFT JOIN rooms r ON s.room_id = r.id
        LEFT JOIN teachers t ON s.homeroom_teacher_id = t.id
        LEFT JOIN parents p ON s.parent_id = p.id
        WHERE s.user_id = $1
        """,
        [user.id],
    )
    return ok(require_row(result, "Student profile not found"))


@router.get("/attendance/summary")
async def attendance_summary(
    academic_year: int | None = None,
    attendance_type: AttendanceType | None = None,
    user: CurrentUser = Depends(student_only),
    db: Database = Depends(get_database),
):
    student = await get_student(db, user)
    sql = f"SELECT {attendance_counts()} FROM attendance WHERE student_id = $1"
    params: list = [student["id"]]
    if attendance_type is not None:
        params.append(attendance_type.value)
        sql += f" AND attendance_type = ${len(params)}"
    if academic_year is not None:
        params.append(academic_year)
        sql += f" AND {BUDDHIST_YEAR_SQL.format(column='attendance_date')} = ${len(params)}"
    result = await db.execute(sql, params)
    return ok(result.first())


@router.get("/attendance/detail")
async def attendance_detail(
    start_date: date | None = None,
    end_date: date | None = None,
    attendance_type: AttendanceType | None = None,
    user: CurrentUser = Depends(student_only),
    db: Database = Depends(get_database),
):
    student = await get_student(db, user)
    sql = """
        SELECT a.id, a.student_id, a.teacher_id, a.room_id, a.subject_id, a.attendance_date,
               a.period_number, a.status, a.attendance_type, a.notes AS note, a.check_in_time,
               sub.subject_name, sub.subject_code, t.full_name AS teacher_name, r.name AS room_name
        FROM attendance a
        LEFT JOIN subjects sub ON a.subject_id = sub.id
        LEFT JOIN teachers t ON a.teacher_id = t.id
        LEFT JOIN rooms r ON a.room_id = r.id
        WHERE a.student_id = $1
    """
    params: list = [student["id"]]
    for clause, value in (
        ("a.attendance_date >= ", start_date),
        ("a.attendance_date <= ", end_date),
        ("a.attendance_type = ", attendance_type.value if attendance_type else None),
    ):
        if value is not None:
            params.append(value)
            sql += f" AND {clause}${len(params)}"
    result = await db.execute(sql + " ORDER BY a.attendance_date DESC, a.period_number", params)
    return listing(result.rows)


@router.get("/attendance/stats")
async def attendance_breakdown(
    academic_year: int | None = None,
    user: CurrentUser = Depends(student_only),
    db: Database = Depends(get_database),
):
    student = await get_student(db, user)
    sql = f"SELECT attendance_type, {attendance_counts()} FROM attendance WHERE student_id = $1"
    params: list = [student["id"]]
    if academic_year is not None:
        params.append(academic_year)
        sql += f" AND {BUDDHIST_YEAR_SQL.format(column='attendance_date')} = $2"
    result = await db.execute(sql + " GROUP BY attendance_type", params)
    return ok(attendance_stats(result.rows))


@router.get("/behavior")
async def behavior(user: CurrentUser = Depends(student_only), db: Database = Depends(get_database)):
    student = await get_student(db, user, "behavior_score")
    return ok({"behavior_score": student["behavior_score"]})


@router.get("/grades")
async def grades(user: CurrentUser = Depends(student_only), db: Database = Depends(get_database)):
    student = await get_student(db, user)
    result = await db.execute(
        """
        SELECT g.id, g.score_1, g.score_2, g.score_3, g.score_4, g.midterm_score, g.final_score,
               g.total_score, g.grade, s.subject_name, s.subject_code, t.full_name AS teacher_name,
               g.created_at, g.updated_at
        FROM grades g
        JOIN subjects s ON g.subject_id = s.id
        LEFT JOIN teachers t ON g.teacher_id = t.id
        WHERE g.student_id = $1
        ORDER BY s.subject_name
        """,
        [student["id"]],
    )
    return listing(result.rows)


@router.get("/grades/gpa")
async def gpa(user: CurrentUser = Depends(student_only), db: Database = Depends(get_database)):
    student = await get_student(db, user)
    result = await db.execute("SELECT grade, total_score FROM grades WHERE student_id = $1", [student["id"]])
    return ok(gpa_summary(result.rows))


@router.get("/health")
async def health_record(user: CurrentUser = Depends(student_only), db: Database = Depends(get_database)):
    student = await get_student(db, user)
    result = await db.execute("SELECT * FROM health_records WHERE student_id = $1", [student["id"]])
    return {"success": True, "data": result.first()}


@router.put("/health")
async def save_health_record(
    payload: HealthRecordRequest,
    user: CurrentUser = Depends(student_only),
    db: Database = Depends(get_database),
):
    student = await get_student(db, user)
    columns = ", ".join(HEALTH_FIELDS)
    placeholders = ", ".join(f"${index}" for index in range(2, len(HEALTH_FIELDS) + 2))
    updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in HEALTH_FIELDS)
    values = payload.model_dump()
    result = await db.execute(
        f"INSERT INTO health_records (student_id, {columns}, updated_at) VALUES ($1, {placeholders}, now()) "
        f"ON CONFLICT (student_id) DO UPDATE SET {updates}, updated_at = now() RETURNING *",
        [student["id"], *(values[name] for name in HEALTH_FIELDS)],
    )
    return ok(result.first(), "Health record saved")


@router.get("/home-visits")
async def home_visits(user: CurrentUser = Depends(student_only), db: Database = Depends(get_database)):
    student = await get_student(db, user)
    result = await db.execute(
        "SELECT hv.*, t.full_name AS teacher_name FROM home_visits hv "
        "LEFT JOIN teachers t ON hv.teacher_id = t.id WHERE hv.student_id = $1 ORDER BY hv.visit_date DESC",
        [student["id"]],
    )
    return listing(result.rows)


@router.get("/classmates")
async def classmates(user: CurrentUser = Depends(student_only), db: Database = Depends(get_database)):
    student = await get_student(db, user, "id, room_id")
    if student["room_id"] is None:
        return listing([])
    result = await db.execute(
        "SELECT id, student_id, full_name, student_number, profile_picture FROM students "
        "WHERE room_id = $1 AND id <> $2 ORDER BY student_number",
        [student["room_id"], student["id"]],
    )
    return listing(result.rows)
