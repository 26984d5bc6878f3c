import asyncio

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.concurrency import run_in_threadpool

from ..database import Database, Transaction, get_database
from ..middleware import require_roles
from ..models import AttendanceStatus, UserRole
from ..responses import listing, ok
from ..schemas import (
    HomeroomAssignRequest,
    ParentCreateRequest,
    ParentUpdateRequest,
    RoomCreateRequest,
    RoomUpdateRequest,
    StudentCreateRequest,
    StudentUpdateRequest,
    SubjectCreateRequest,
    TeacherCreateRequest,
    TeacherUpdateRequest,
)
from ..security import hash_password
from ..services import build_update, require_row

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(require_roles(UserRole.ADMIN))],
)

TEACHER_SELECT = """
    SELECT t.*, r.name AS homeroom_room_name, u.phone AS user_phone, u.is_active,
           t.user_id IS NOT NULL AS is_registered
    FROM teachers t
    LEFT JOIN rooms r ON t.homeroom_room_id = r.id
    LEFT JOIN users u ON t.user_id = u.id
"""


@router.get("/statistics")
async def statistics(db: Database = Depends(get_database)):
    results = await asyncio.gather(
        db.execute("SELECT COUNT(*) AS count FROM teachers WHERE user_id IS NOT NULL"),
        db.execute("SELECT COUNT(*) AS count FROM students WHERE user_id IS NOT NULL"),
        db.execute("SELECT COUNT(*) AS count FROM rooms"),
        db.execute("SELECT COUNT(*) AS count FROM users WHERE is_active = true"),
        db.execute("SELECT COUNT(*) AS count FROM parents"),
        db.execute(
            "SELECT COUNT(DISTINCT student_id) AS count FROM attendance "
            "WHERE attendance_date = CURRENT_DATE AND status = $1",
            [AttendanceStatus.PRESENT.value],
        ),
        db.execute(
            "SELECT r.name, COUNT(s.id) AS student_count FROM rooms r "
            "LEFT JOIN students s ON r.id = s.room_id "
            "GROUP BY r.id ORDER BY student_count DESC LIMIT 5"
        ),
    )
    teachers, students, rooms, active, parents, present, top_rooms = results
    return ok(
        {
            "total_teachers": teachers.scalar("count", 0),
            "total_students": students.scalar("count", 0),
            "total_rooms": rooms.scalar("count", 0),
            "active_users": active.scalar("count", 0),
            "total_parents": parents.scalar("count", 0),
            "present_today": present.scalar("count", 0),
            "top_rooms": top_rooms.rows,
        }
    )


# --- teachers ---


@router.get("/teachers")
async def list_teachers(
    search: str | None = None,
    subject_group: str | None = None,
    db: Database = Depends(get_database),
):
    sql = TEACHER_SELECT + " WHERE true"
    params: list = []
    if search:
        params.append(f"%{search}%")
        n = len(params)
        sql += f" AND (t.full_name ILIKE ${n} OR t.teacher_code ILIKE ${n} OR t.phone ILIKE ${n})"
    if subject_group:
        params.append(subject_group)
        sql += f" AND t.subject_group = ${len(params)}"
    result = await db.execute(sql + " ORDER BY t.full_name", params)
    return listing(result.rows)


@router.get("/teachers/{teacher_id}")
async def get_teacher(teacher_id: int, db: Database = Depends(get_database)):
    result = await db.execute(TEACHER_SELECT + " WHERE t.id = $1", [teacher_id])
    return ok(require_row(result, "Teacher not found"))


@router.post("/teachers", status_code=status.HTTP_201_CREATED)
async def create_teacher(payload: TeacherCreateRequest, db: Database = Depends(get_database)):
    taken = await db.execute("SELECT id FROM users WHERE phone = $1", [payload.phone])
    if taken.row_count:
        raise HTTPException(status_code=400, detail="Phone number is already registered")

    password_hash = await run_in_threadpool(hash_password, payload.password)

    async def insert(tx: Transaction) -> dict:
        user = await tx.query(
            "INSERT INTO users (phone, password_hash, role, is_first_login) "
            "VALUES ($1, $2, $3, true) RETURNING id",
            [payload.phone, password_hash, UserRole.TEACHER.value],
        )
        teacher = await tx.query(
            "INSERT INTO teachers (user_id, teacher_code, full_name, email, phone, address, subject_group) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7) RETURNING *",
            [
                user.scalar("id"),
                payload.teacher_code,
                payload.full_name,
                payload.email,
                payload.phone,
                payload.address,
                payload.subject_group,
            ],
        )
        return teacher.first()

    return ok(await db.run(insert), "Teacher created")


@router.put("/teachers/{teacher_id}")
async def update_teacher(teacher_id: int, payload: TeacherUpdateRequest, db: Database = Depends(get_database)):
    sql, params = build_update("teachers", payload.model_dump(exclude_none=True), teacher_id)
    result = await db.execute(sql, params)
    return ok(require_row(result, "Teacher not found"), "Teacher updated")


async def _delete_with_user(db: Database, table: str, row_id: int, missing: str) -> None:
    async def delete(tx: Transaction) -> None:
        row = require_row(await tx.query(f"SELECT user_id FROM {table} WHERE id = $1", [row_id]), missing)
        if row["user_id"]:
            # Cascades to the profile row.
            await tx.query("DELETE FROM users WHERE id = $1", [row["user_id"]])
        else:
            await tx.query(f"DELETE FROM {table} WHERE id = $1", [row_id])

    await db.run(delete)


@router.delete("/teachers/{teacher_id}")
async def delete_teacher(teacher_id: int, db: Database = Depends(get_database)):
    await _delete_with_user(db, "teachers", teacher_id, "Teacher not found")
    return ok(message="Teacher deleted")


@router.put("/teachers/{teacher_id}/homeroom")
async def assign_homeroom(
    teacher_id: int, payload: HomeroomAssignRequest, db: Database = Depends(get_database)
):
    room_id = payload.room_id

    async def assign(tx: Transaction) -> None:
        require_row(await tx.query("SELECT id FROM teachers WHERE id = $1", [teacher_id]), "Teacher not found")
        room = require_row(
            await tx.query("SELECT homeroom_teacher_id FROM rooms WHERE id = $1", [room_id]), "Room not found"
        )
        previous = room["homeroom_teacher_id"]
        if previous and previous != teacher_id:
            await tx.query("UPDATE teachers SET homeroom_room_id = NULL WHERE id = $1", [previous])
            await tx.query(
                "UPDATE teacher_rooms SET is_homeroom = false WHERE teacher_id = $1 AND room_id = $2",
                [previous, room_id],
            )
        await tx.query("UPDATE rooms SET homeroom_teacher_id = $1 WHERE id = $2", [teacher_id, room_id])
        await tx.query("UPDATE teachers SET homeroom_room_id = $1 WHERE id = $2", [room_id, teacher_id])
        await tx.query(
            "INSERT INTO teacher_rooms (teacher_id, room_id, is_homeroom) VALUES ($1, $2, true) "
            "ON CONFLICT (teacher_id, room_id) DO UPDATE SET is_homeroom = true",
            [teacher_id, room_id],
        )
        await tx.query("UPDATE students SET homeroom_teacher_id = $1 WHERE room_id = $2", [teacher_id, room_id])

    await db.run(assign)
    return ok(message="Homeroom assigned")


# --- students ---


@router.get("/students")
async def list_students(
    search: str | None = None,
    room_id: int | None = None,
    grade_level: int | None = None,
    db: Database = Depends(get_database),
):
    sql = """
        SELECT s.*, r.name AS room_name, r.grade_level, t.full_name AS homeroom_teacher_name,
               p.full_name AS parent_name, p.phone AS parent_phone,
               s.user_id IS NOT NULL AS is_registered
        FROM students s
        LEFT JOIN rooms r ON s.room_id = r.id
        LEFT JOIN teachers t ON s.homeroom_teacher_id = t.id
        LEFT JOIN parents p ON s.parent_id = p.id
        WHERE true
    """
    params: list = []
    if search:
        params.append(f"%{search}%")
        sql += f" AND (s.full_name ILIKE ${len(params)} OR s.student_id ILIKE ${len(params)})"
    if room_id is not None:
        params.append(room_id)
        sql += f" AND s.room_id = ${len(params)}"
    if grade_level is not None:
        params.append(grade_level)
        sql += f" AND r.grade_level = ${len(params)}"
    result = await db.execute(sql + " ORDER BY r.name, s.student_number", params)
    return listing(result.rows)


@router.post("/students", status_code=status.HTTP_201_CREATED)
async def create_student(payload: StudentCreateRequest, db: Database = Depends(get_database)):
    if (await db.execute("SELECT id FROM students WHERE phone = $1", [payload.phone])).row_count:
        raise HTTPException(status_code=400, detail="Phone number is already registered")
    if (await db.execute("SELECT id FROM students WHERE student_id = $1", [payload.student_id])).row_count:
        raise HTTPException(status_code=400, detail="Student ID is already in use")

    room = await db.execute("SELECT homeroom_teacher_id FROM rooms WHERE id = $1", [payload.room_id])
    result = await db.execute(
        "INSERT INTO students "
        "(student_id, full_name, phone, room_id, student_number, parent_id, homeroom_teacher_id, behavior_score) "
        "VALUES ($1, $2, $3, $4, $5, $6, $7, 100) RETURNING *",
        [
            payload.student_id,
            payload.full_name,
            payload.phone,
            payload.room_id,
            payload.student_number,
            payload.parent_id,
            room.scalar("homeroom_teacher_id"),
        ],
    )
    return ok(result.first(), "Student created")


@router.put("/students/{student_id}")
async def update_student(student_id: int, payload: StudentUpdateRequest, db: Database = Depends(get_database)):
    sql, params = build_update("students", payload.model_dump(exclude_none=True), student_id)
    result = await db.execute(sql, params)
    return ok(require_row(result, "Student not found"), "Student updated")


@router.delete("/students/{student_id}")
async def delete_student(student_id: int, db: Database = Depends(get_database)):
    await _delete_with_user(db, "students", student_id, "Student not found")
    return ok(message="Student deleted")


# --- parents ---


@router.get("/parents")
async def list_parents(db: Database = Depends(get_database)):
    result = await db.execute(
        "SELECT p.*, COUNT(s.id) AS children_count FROM parents p "
        "LEFT JOIN students s ON p.id = s.parent_id GROUP BY p.id ORDER BY p.full_name"
    )
    return listing(result.rows)


@router.post("/parents", status_code=status.HTTP_201_CREATED)
async def create_parent(payload: ParentCreateRequest, db: Database = Depends(get_database)):
    result = await db.execute(
        "INSERT INTO parents (full_name, phone, relationship, email, address) "
        "VALUES ($1, $2, $3, $4, $5) RETURNING *",
        [payload.full_name, payload.phone, payload.relationship, payload.email, payload.address],
    )
    return ok(result.first(), "Parent created")


@router.put("/parents/{parent_id}")
async def update_parent(parent_id: int, payload: ParentUpdateRequest, db: Database = Depends(get_database)):
    sql, params = build_update("parents", payload.model_dump(exclude_none=True), parent_id)
    result = await db.execute(sql, params)
    return ok(require_row(result, "Parent not found"), "Parent updated")


@router.delete("/parents/{parent_id}")
async def delete_parent(parent_id: int, db: Database = Depends(get_database)):
    children = await db.execute("SELECT COUNT(*) AS count FROM students WHERE parent_id = $1", [parent_id])
    if children.scalar("count", 0) > 0:
        raise HTTPException(status_code=400, detail="Cannot delete a parent with linked students")
    await db.execute("DELETE FROM parents WHERE id = $1", [parent_id])
    return ok(message="Parent deleted")


# --- rooms ---


@router.get("/rooms")
async def list_rooms(db: Database = Depends(get_database)):
    result = await db.execute(
        "SELECT r.*, t.full_name AS homeroom_teacher_name, COUNT(s.id) AS student_count "
        "FROM rooms r "
        "LEFT JOIN teachers t ON r.homeroom_teacher_id = t.id "
        "LEFT JOIN students s ON s.room_id = r.id "
        "GROUP BY r.id, t.full_name ORDER BY r.grade_level, r.room_number"
    )
    return listing(result.rows)


@router.post("/rooms", status_code=status.HTTP_201_CREATED)
async def create_room(payload: RoomCreateRequest, db: Database = Depends(get_database)):
    result = await db.execute(
        "INSERT INTO rooms (name, grade_level, room_number, capacity, academic_year) "
        "VALUES ($1, $2, $3, $4, $5) RETURNING *",
        [payload.name, payload.grade_level, payload.room_number, payload.capacity, payload.academic_year],
    )
    return ok(result.first(), "Room created")


@router.put("/rooms/{room_id}")
async def update_room(room_id: int, payload: RoomUpdateRequest, db: Database = Depends(get_database)):
    sql, params = build_update("rooms", payload.model_dump(exclude_none=True), room_id)
    result = await db.execute(sql, params)
    return ok(require_row(result, "Room not found"), "Room updated")


@router.delete("/rooms/{room_id}")
async def delete_room(room_id: int, db: Database = Depends(get_database)):
    students = await db.execute("SELECT COUNT(*) AS count FROM students WHERE room_id = $1", [room_id])
    if students.scalar("count", 0) > 0:
        raise HTTPException(status_code=400, detail="Cannot delete a room with assigned students")
    await db.execute("DELETE FROM rooms WHERE id = $1", [room_id])
    return ok(message="Room deleted")


@router.delete("/rooms/{room_id}/homeroom")
async def remove_homeroom(room_id: int, db: Database = Depends(get_database)):
    async def unassign(tx: Transaction) -> None:
        room = require_row(
            await tx.query("SELECT homeroom_teacher_id FROM rooms WHERE id = $1", [room_id]), "Room not found"
        )
        teacher_id = room["homeroom_teacher_id"]
        if not teacher_id:
            raise HTTPException(status_code=400, detail="Room has no homeroom teacher")
        await tx.query("UPDATE rooms SET homeroom_teacher_id = NULL WHERE id = $1", [room_id])
        await tx.query("UPDATE teachers SET homeroom_room_id = NULL WHERE id = $1", [teacher_id])
        await tx.query(
            "UPDATE teacher_rooms SET is_homeroom = false WHERE teacher_id = $1 AND room_id = $2",
            [teacher_id, room_id],
        )
        await tx.query("UPDATE students SET homeroom_teacher_id = NULL WHERE room_id = $1", [room_id])

    await db.run(unassign)
    return ok(message="Homeroom teacher removed")


# --- subjects ---


@router.get("/subjects")
async def list_subjects(subject_group: str | None = None, db: Database = Depends(get_database)):
    if subject_group:
        result = await db.execute(
            "SELECT * FROM subjects WHERE subject_group = $1 ORDER BY subject_code", [subject_group]
        )
    else:
        result = await db.execute("SELECT * FROM subjects ORDER BY subject_code")
    return listing(result.rows)


@router.post("/subjects", status_code=status.HTTP_201_CREATED)
async def create_subject(payload: SubjectCreateRequest, db: Database = Depends(get_database)):
    result = await db.execute(
        "INSERT INTO subjects (subject_code, subject_name, subject_group, credits) "
        "VALUES ($1, $2, $3, $4) RETURNING *",
        [payload.subject_code, payload.subject_name, payload.subject_group, payload.credits],
    )
    return ok(result.first(), "Subject created")
