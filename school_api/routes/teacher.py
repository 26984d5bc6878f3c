import asyncio
import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, status

from ..database import Database, Transaction, get_database
from ..middleware import CurrentUser, require_roles
from ..models import AttendanceType, UserRole
from ..responses import listing, ok
from ..schemas import (
    GradeBatchRequest,
    GradeSheetRequest,
    HomeroomAttendanceRequest,
    HomeVisitCreateRequest,
    RoomAssignRequest,
    StudentPhotoRequest,
    SubjectAssignRequest,
    SubjectAttendanceRequest,
    TeacherProfileUpdateRequest,
)
from ..services import (
    attendance_counts,
    build_update,
    ensure_teaches,
    get_teacher,
    gpa_summary,
    require_row,
    teacher_has_room,
    upsert_grade,
)
from ..sheets import GradeSheetClient, SheetNotConfigured, SheetSyncError, get_sheet_client


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teacher", tags=["Teacher"])

teacher_only = require_roles(UserRole.TEACHER)

STUDENT_PROFILE_SELECT = """
    SELECT s.*, r.name AS room_name, r.grade_level,
           t.full_name AS homeroom_teacher_name, t.phone AS teacher_phone,
           p.full_name AS parent_name, p.phone AS parent_phone, p.relationship AS parent_relationship
    FROM students s
    LEFT JOIN rooms r ON s.room_id = r.id
    LEFT JOIN teachers t ON s.homeroom_teacher_id = t.id
    LEFT JOIN parents p ON s.parent_id = p.id
    WHERE s.id = $1
"""

STUDENT_GRADES_SELECT = """
    SELECT g.id, g.score_1, g.score_2, g.score_3, g.score_4, g.midterm_score, g.final_score,
           g.total_score, g.grade, s.subject_name, s.subject_code, t.full_name AS teacher_name,
           g.created_at, g.updated_at
    FROM grades g
    JOIN subjects s ON g.subject_id = s.id
    LEFT JOIN teachers t ON g.teacher_id = t.id
    WHERE g.student_id = $1
    ORDER BY s.subject_name
"""

HOME_VISITS_SELECT = """
    SELECT hv.*, t.full_name AS teacher_name
    FROM home_visits hv
    LEFT JOIN teachers t ON hv.teacher_id = t.id
    WHERE hv.student_id = $1
    ORDER BY hv.visit_date DESC
"""


async def _ensure_student_access(db: Database, teacher_id: int, student_id: int) -> None:
    access = await db.execute(
        "SELECT 1 FROM students s JOIN teacher_rooms tr ON s.room_id = tr.room_id "
        "WHERE s.id = $1 AND tr.teacher_id = $2",
        [student_id, teacher_id],
    )
    if not access.row_count:
        raise HTTPException(status_code=403, detail="You do not have access to this student")


# --- profile ---


@router.get("/profile")
async def get_profile(user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)):
    result = await db.execute(
        "SELECT t.id, t.teacher_code, t.full_name, t.email, t.phone, t.profile_picture, t.subject_group, "
        "t.homeroom_room_id, r.name AS homeroom_room_name, r.grade_level AS homeroom_grade_level, t.created_at "
        "FROM teachers t LEFT JOIN rooms r ON t.homeroom_room_id = r.id WHERE t.user_id = $1",
        [user.id],
    )
    return ok(require_row(result, "Teacher profile not found"))


@router.put("/profile")
async def update_profile(
    payload: TeacherProfileUpdateRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    sql, params = build_update("teachers", payload.model_dump(exclude_none=True), teacher["id"])
    result = await db.execute(sql, params)
    return ok(result.first(), "Profile updated")


# --- subjects ---


@router.get("/subjects")
async def list_subjects(user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)):
    teacher = await get_teacher(db, user)
    result = await db.execute(
        "SELECT s.*, ts.id AS teacher_subject_id FROM subjects s "
        "JOIN teacher_subjects ts ON s.id = ts.subject_id "
        "WHERE ts.teacher_id = $1 ORDER BY s.subject_name",
        [teacher["id"]],
    )
    return listing(result.rows)


@router.get("/subjects/available")
async def available_subjects(user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)):
    teacher = await get_teacher(db, user)
    result = await db.execute(
        "SELECT s.* FROM subjects s WHERE s.id NOT IN "
        "(SELECT subject_id FROM teacher_subjects WHERE teacher_id = $1) ORDER BY s.subject_name",
        [teacher["id"]],
    )
    return listing(result.rows)


@router.post("/subjects", status_code=status.HTTP_201_CREATED)
async def add_subject(
    payload: SubjectAssignRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    result = await db.execute(
        "INSERT INTO teacher_subjects (teacher_id, subject_id) VALUES ($1, $2) "
        "ON CONFLICT (teacher_id, subject_id) DO NOTHING RETURNING id",
        [teacher["id"], payload.subject_id],
    )
    if not result.row_count:
        raise HTTPException(status_code=400, detail="Subject already added")
    return ok(message="Subject added")


@router.delete("/subjects/{subject_id}")
async def remove_subject(
    subject_id: int, user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)
):
    teacher = await get_teacher(db, user)
    await db.execute(
        "DELETE FROM teacher_subjects WHERE teacher_id = $1 AND subject_id = $2", [teacher["id"], subject_id]
    )
    return ok(message="Subject removed")


# --- rooms ---


@router.get("/rooms")
async def list_rooms(user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)):
    teacher = await get_teacher(db, user)
    result = await db.execute(
        "SELECT r.*, tr.is_homeroom, COUNT(s.id) AS student_count FROM rooms r "
        "JOIN teacher_rooms tr ON r.id = tr.room_id "
        "LEFT JOIN students s ON s.room_id = r.id "
        "WHERE tr.teacher_id = $1 GROUP BY r.id, tr.is_homeroom "
        "ORDER BY tr.is_homeroom DESC, r.name",
        [teacher["id"]],
    )
    return listing(result.rows)


@router.get("/rooms/available")
async def available_rooms(
    grade_level: int | None = None,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    sql = "SELECT r.* FROM rooms r WHERE r.id NOT IN (SELECT room_id FROM teacher_rooms WHERE teacher_id = $1)"
    params: list = [teacher["id"]]
    if grade_level is not None:
        params.append(grade_level)
        sql += " AND r.grade_level = $2"
    result = await db.execute(sql + " ORDER BY r.name", params)
    return listing(result.rows)


@router.post("/rooms", status_code=status.HTTP_201_CREATED)
async def add_room(
    payload: RoomAssignRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    result = await db.execute(
        "INSERT INTO teacher_rooms (teacher_id, room_id, is_homeroom) VALUES ($1, $2, false) "
        "ON CONFLICT (teacher_id, room_id) DO NOTHING RETURNING id",
        [teacher["id"], payload.room_id],
    )
    if not result.row_count:
        raise HTTPException(status_code=400, detail="Room already added")
    return ok(message="Room added")


@router.delete("/rooms/{room_id}")
async def remove_room(room_id: int, user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)):
    teacher = await get_teacher(db, user)
    link = await teacher_has_room(db, teacher["id"], room_id)
    if link and link["is_homeroom"]:
        raise HTTPException(status_code=400, detail="Homeroom cannot be removed")
    await db.execute("DELETE FROM teacher_rooms WHERE teacher_id = $1 AND room_id = $2", [teacher["id"], room_id])
    return ok(message="Room removed")


@router.get("/rooms/{room_id}/students")
async def room_students(
    room_id: int, user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)
):
    teacher = await get_teacher(db, user)
    if await teacher_has_room(db, teacher["id"], room_id) is None:
        raise HTTPException(status_code=403, detail="You do not have access to this room")
    result = await db.execute(
        "SELECT s.*, p.full_name AS parent_name, p.phone AS parent_phone FROM students s "
        "LEFT JOIN parents p ON s.parent_id = p.id WHERE s.room_id = $1 ORDER BY s.student_number",
        [room_id],
    )
    return listing(result.rows)


# --- students ---


@router.get("/students/{student_id}")
async def student_detail(
    student_id: int, user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)
):
    teacher = await get_teacher(db, user, "id, homeroom_room_id")
    student = require_row(await db.execute(STUDENT_PROFILE_SELECT, [student_id]), "Student not found")

    is_homeroom = teacher["homeroom_room_id"] is not None and teacher["homeroom_room_id"] == student["room_id"]
    if is_homeroom:
        return ok(student, is_limited_view=False)
    if student["room_id"] is None or await teacher_has_room(db, teacher["id"], student["room_id"]) is None:
        raise HTTPException(status_code=403, detail="You do not have access to this student")
    limited = {key: student[key] for key in ("id", "student_id", "full_name", "profile_picture", "room_name")}
    return ok(limited, is_limited_view=True)


@router.get("/students/{student_id}/complete")
async def student_complete(
    student_id: int, user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)
):
    teacher = await get_teacher(db, user)
    await _ensure_student_access(db, teacher["id"], student_id)

    profile, attendance, grades, health, visits = await asyncio.gather(
        db.execute(STUDENT_PROFILE_SELECT, [student_id]),
        db.execute(
            f"SELECT {attendance_counts()} FROM attendance WHERE student_id = $1 AND attendance_type = $2",
            [student_id, AttendanceType.HOMEROOM.value],
        ),
        db.execute(STUDENT_GRADES_SELECT, [student_id]),
        db.execute("SELECT * FROM health_records WHERE student_id = $1", [student_id]),
        db.execute(HOME_VISITS_SELECT, [student_id]),
    )
    return ok(
        {
            "profile": profile.first(),
            "attendance": attendance.first(),
            "grades": grades.rows,
            "gpa": gpa_summary(grades.rows),
            "health": health.first(),
            "home_visits": visits.rows,
        }
    )


@router.put("/students/{student_id}/photo")
async def update_student_photo(
    student_id: int,
    payload: StudentPhotoRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    await _ensure_student_access(db, teacher["id"], student_id)
    result = await db.execute(
        "UPDATE students SET profile_picture = $1, updated_at = now() WHERE id = $2 RETURNING id, profile_picture",
        [payload.profile_picture, student_id],
    )
    return ok(result.first(), "Photo updated")


# --- attendance ---


@router.post("/attendance/homeroom")
async def take_homeroom_attendance(
    payload: HomeroomAttendanceRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user, "id, homeroom_room_id")
    if teacher["homeroom_room_id"] != payload.room_id:
        raise HTTPException(status_code=403, detail="You can only take attendance for your homeroom")
    check_in = datetime.now().time().replace(microsecond=0)

    async def save(tx: Transaction) -> int:
        for record in payload.attendance_list:
            await tx.query(
                "INSERT INTO attendance "
                "(student_id, teacher_id, room_id, attendance_date, period_number, status, attendance_type, check_in_time) "
                "VALUES ($1, $2, $3, $4, 0, $5, $6, $7) "
                "ON CONFLICT (student_id, attendance_date, attendance_type, period_number) DO UPDATE SET "
                "status = EXCLUDED.status, teacher_id = EXCLUDED.teacher_id, check_in_time = EXCLUDED.check_in_time",
                [
                    record.student_id,
                    teacher["id"],
                    payload.room_id,
                    payload.attendance_date,
                    record.status.value,
                    AttendanceType.HOMEROOM.value,
                    check_in,
                ],
            )
        return len(payload.attendance_list)

    saved = await db.run(save)
    return ok(message="Attendance saved", count=saved)


@router.post("/attendance/subject")
async def take_subject_attendance(
    payload: SubjectAttendanceRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    await ensure_teaches(db, teacher["id"], payload.subject_id, payload.room_id)
    check_in = datetime.now().time().replace(microsecond=0)

    async def save(tx: Transaction) -> int:
        for record in payload.attendance_list:
            await tx.query(
                "INSERT INTO attendance (student_id, teacher_id, room_id, subject_id, attendance_date, "
                "period_number, status, attendance_type, check_in_time) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9) "
                "ON CONFLICT (student_id, attendance_date, attendance_type, period_number) DO UPDATE SET "
                "status = EXCLUDED.status, teacher_id = EXCLUDED.teacher_id, "
                "subject_id = EXCLUDED.subject_id, check_in_time = EXCLUDED.check_in_time",
                [
                    record.student_id,
                    teacher["id"],
                    payload.room_id,
                    payload.subject_id,
                    payload.attendance_date,
                    payload.period_number,
                    record.status.value,
                    AttendanceType.SUBJECT.value,
                    check_in,
                ],
            )
        return len(payload.attendance_list)

    saved = await db.run(save)
    return ok(message="Attendance saved", count=saved)


@router.get("/attendance/history")
async def attendance_history(
    room_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    attendance_type: AttendanceType | None = None,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    sql = """
        SELECT a.*, s.full_name AS student_name, s.student_id AS student_code, s.student_number,
               r.name AS room_name, sub.subject_name, sub.subject_code
        FROM attendance a
        JOIN students s ON a.student_id = s.id
        JOIN rooms r ON a.room_id = r.id
        LEFT JOIN subjects sub ON a.subject_id = sub.id
        WHERE a.teacher_id = $1
    """
    params: list = [teacher["id"]]
    for clause, value in (
        ("a.room_id = ", room_id),
        ("a.attendance_date >= ", start_date),
        ("a.attendance_date <= ", end_date),
        ("a.attendance_type = ", attendance_type.value if attendance_type else None),
    ):
        if value is not None:
            params.append(value)
            sql += f" AND {clause}${len(params)}"
    result = await db.execute(sql + " ORDER BY a.attendance_date DESC, a.period_number, s.student_number", params)
    return listing(result.rows)


@router.get("/attendance/summary/{room_id}")
async def attendance_summary(
    room_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    if await teacher_has_room(db, teacher["id"], room_id) is None:
        raise HTTPException(status_code=403, detail="You do not have access to this room")

    # Date filters sit in the join so students without records still appear.
    join = "LEFT JOIN attendance a ON s.id = a.student_id"
    params: list = [room_id]
    if start_date is not None:
        params.append(start_date)
        join += f" AND a.attendance_date >= ${len(params)}"
    if end_date is not None:
        params.append(end_date)
        join += f" AND a.attendance_date <= ${len(params)}"
    counts = attendance_counts("a.status", total_column="a.id", total_alias="total_records")
    result = await db.execute(
        f"SELECT s.id AS student_id, s.student_number, s.full_name AS student_name, {counts} "
        f"FROM students s {join} WHERE s.room_id = $1 "
        "GROUP BY s.id, s.student_number, s.full_name ORDER BY s.student_number",
        params,
    )
    return listing(result.rows)


# --- grades ---


@router.post("/grades/batch")
async def save_grades(
    payload: GradeBatchRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    await ensure_teaches(db, teacher["id"], payload.subject_id, payload.room_id)

    async def save(tx: Transaction) -> int:
        for entry in payload.grades:
            await upsert_grade(
                tx,
                student_id=entry.student_id,
                subject_id=payload.subject_id,
                room_id=payload.room_id,
                teacher_id=teacher["id"],
                scores=entry,
            )
        return len(payload.grades)

    saved = await db.run(save)
    return ok(message=f"Saved {saved} grade records", count=saved)


@router.get("/grades/{room_id}/{subject_id}")
async def room_grades(
    room_id: int,
    subject_id: int,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    await ensure_teaches(db, teacher["id"], subject_id, room_id)
    result = await db.execute(
        "SELECT s.id, s.student_id, s.student_number, s.full_name, "
        "g.score_1, g.score_2, g.score_3, g.score_4, g.midterm_score, g.final_score, g.total_score, g.grade "
        "FROM students s LEFT JOIN grades g ON s.id = g.student_id AND g.subject_id = $2 "
        "WHERE s.room_id = $1 ORDER BY s.student_number",
        [room_id, subject_id],
    )
    return listing(result.rows)


# --- grade sheets ---


def _sheet_error(exc: SheetSyncError) -> HTTPException:
    code = status.HTTP_503_SERVICE_UNAVAILABLE if isinstance(exc, SheetNotConfigured) else status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=str(exc))


@router.post("/create-grade-sheet")
async def create_grade_sheet(
    payload: GradeSheetRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
    sheets: GradeSheetClient = Depends(get_sheet_client),
):
    teacher = await get_teacher(db, user)
    room, subject, existing, students = await asyncio.gather(
        db.execute("SELECT name FROM rooms WHERE id = $1", [payload.room_id]),
        db.execute("SELECT subject_name FROM subjects WHERE id = $1", [payload.subject_id]),
        db.execute(
            "SELECT sheet_id FROM grade_sheets WHERE room_id = $1 AND subject_id = $2",
            [payload.room_id, payload.subject_id],
        ),
        db.execute(
            "SELECT s.id, s.student_number, s.student_id, s.full_name, "
            "COALESCE(g.score_1, 0) AS score_1, COALESCE(g.score_2, 0) AS score_2, "
            "COALESCE(g.score_3, 0) AS score_3, COALESCE(g.score_4, 0) AS score_4, "
            "COALESCE(g.midterm_score, 0) AS midterm_score, COALESCE(g.final_score, 0) AS final_score "
            "FROM students s LEFT JOIN grades g ON s.id = g.student_id AND g.subject_id = $2 "
            "WHERE s.room_id = $1 ORDER BY s.student_number",
            [payload.room_id, payload.subject_id],
        ),
    )
    if not room.row_count or not subject.row_count:
        raise HTTPException(status_code=404, detail="Room or subject not found")

    try:
        sheet = await sheets.create_or_update_sheet(
            sheet_id=existing.scalar("sheet_id"),
            room_name=room.scalar("name"),
            subject_name=subject.scalar("subject_name"),
            students=students.rows,
        )
    except SheetSyncError as exc:
        raise _sheet_error(exc) from exc

    await db.execute(
        "INSERT INTO grade_sheets (room_id, subject_id, sheet_id, sheet_url, teacher_id) "
        "VALUES ($1, $2, $3, $4, $5) "
        "ON CONFLICT (room_id, subject_id) DO UPDATE SET sheet_id = EXCLUDED.sheet_id, "
        "sheet_url = EXCLUDED.sheet_url, teacher_id = EXCLUDED.teacher_id, updated_at = now()",
        [payload.room_id, payload.subject_id, sheet["sheet_id"], sheet["sheet_url"], teacher["id"]],
    )
    return ok(sheet, "Grade sheet created")


@router.get("/grade-sheet/{room_id}/{subject_id}")
async def get_grade_sheet(
    room_id: int,
    subject_id: int,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    result = await db.execute(
        "SELECT sheet_id, sheet_url FROM grade_sheets WHERE room_id = $1 AND subject_id = $2", [room_id, subject_id]
    )
    return ok(require_row(result, "No grade sheet for this room and subject"))


@router.post("/import-from-sheet")
async def import_from_sheet(
    payload: GradeSheetRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
    sheets: GradeSheetClient = Depends(get_sheet_client),
):
    teacher = await get_teacher(db, user)
    sheet = require_row(
        await db.execute(
            "SELECT sheet_id FROM grade_sheets WHERE room_id = $1 AND subject_id = $2",
            [payload.room_id, payload.subject_id],
        ),
        "No grade sheet for this room and subject",
    )
    try:
        rows = await sheets.fetch_grades(sheet["sheet_id"])
    except SheetSyncError as exc:
        raise _sheet_error(exc) from exc

    async def save(tx: Transaction) -> int:
        updated = 0
        for row in rows:
            student = await tx.query("SELECT id FROM students WHERE student_id = $1", [str(row.get("student_id"))])
            if not student.row_count:
                continue
            await upsert_grade(
                tx,
                student_id=student.scalar("id"),
                subject_id=payload.subject_id,
                room_id=payload.room_id,
                teacher_id=teacher["id"],
                scores=row,
            )
            updated += 1
        return updated

    updated = await db.run(save)
    logger.info(f"Imported {updated}/{len(rows)} grade rows from sheet {sheet['sheet_id']}")
    return ok(message=f"Imported {updated} grade records", count=updated)


# --- home visits ---


@router.post("/home-visits", status_code=status.HTTP_201_CREATED)
async def create_home_visit(
    payload: HomeVisitCreateRequest,
    user: CurrentUser = Depends(teacher_only),
    db: Database = Depends(get_database),
):
    teacher = await get_teacher(db, user)
    result = await db.execute(
        "INSERT INTO home_visits (student_id, teacher_id, visit_date, latitude, longitude, maps_url, notes, report_pdf) "
        "VALUES ($1, $2, $3, $4, $5, $6, $7, $8) RETURNING *",
        [
            payload.student_id,
            teacher["id"],
            payload.visit_date,
            payload.latitude,
            payload.longitude,
            payload.maps_url,
            payload.notes,
            payload.report_pdf,
        ],
    )
    return ok(result.first(), "Home visit recorded")


@router.get("/home-visits/{student_id}")
async def list_home_visits(
    student_id: int, user: CurrentUser = Depends(teacher_only), db: Database = Depends(get_database)
):
    await get_teacher(db, user)
    result = await db.execute(HOME_VISITS_SELECT, [student_id])
    return listing(result.rows)
