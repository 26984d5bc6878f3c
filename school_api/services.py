from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, status
from starlette.concurrency import run_in_threadpool

from .config import settings
from .database import Database, QueryResult, Transaction
from .middleware import CurrentUser
from .models import AttendanceStatus, UserRole
from .otp_service import OtpError, OtpStore, dispatch_otp, otp_store
from .security import create_access_token, hash_password, verify_password


ADMIN_DISPLAY_NAME = "System Administrator"
GRADE_THRESHOLDS = ((Decimal("80"), "A"), (Decimal("70"), "B"), (Decimal("60"), "C"), (Decimal("50"), "D"))
GRADE_POINTS = {"A": Decimal("4"), "B": Decimal("3"), "C": Decimal("2"), "D": Decimal("1"), "F": Decimal("0")}
SCORE_FIELDS = ("score_1", "score_2", "score_3", "score_4", "midterm_score", "final_score")

_PROFILE_QUERIES = {
    UserRole.TEACHER.value: (
        "SELECT id AS profile_id, full_name, email, subject_group, profile_picture "
        "FROM teachers WHERE user_id = $1"
    ),
    UserRole.STUDENT.value: (
        "SELECT id AS profile_id, student_id, full_name, profile_picture FROM students WHERE user_id = $1"
    ),
}


# --- auth ---


async def request_registration_otp(
    db: Database, *, phone: str, role: UserRole, store: OtpStore = otp_store
) -> str:
    existing = await db.execute("SELECT id FROM users WHERE phone = $1", [phone])
    if existing.row_count:
        raise HTTPException(status_code=400, detail="Phone number is already registered")

    if role is UserRole.STUDENT:
        found = await db.execute("SELECT id FROM students WHERE phone = $1 AND user_id IS NULL", [phone])
        if not found.row_count:
            raise HTTPException(status_code=400, detail="Student record not found, please contact an admin")
    elif role is UserRole.TEACHER:
        found = await db.execute("SELECT id FROM teachers WHERE phone = $1 AND user_id IS NULL", [phone])
        if not found.row_count:
            raise HTTPException(status_code=400, detail="Teacher record not found, please contact an admin")

    otp = store.issue(phone, role.value)
    dispatch_otp(phone, otp)
    return otp


async def register_with_otp(
    db: Database, *, phone: str, otp: str, password: str, store: OtpStore = otp_store
) -> int:
    try:
        entry = store.verify(phone, otp)
    except OtpError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    password_hash = await run_in_threadpool(hash_password, password)

    async def create_user(tx: Transaction) -> int:
        created = await tx.query(
            "INSERT INTO users (phone, password_hash, role, is_first_login, is_active) "
            "VALUES ($1, $2, $3, true, true) RETURNING id",
            [phone, password_hash, entry.role],
        )
        user_id = created.scalar("id")
        if entry.role == UserRole.TEACHER.value:
            await tx.query("UPDATE teachers SET user_id = $1 WHERE phone = $2", [user_id, phone])
        elif entry.role == UserRole.STUDENT.value:
            await tx.query("UPDATE students SET user_id = $1 WHERE phone = $2", [user_id, phone])
        return user_id

    user_id = await db.run(create_user)
    store.discard(phone)
    return user_id


async def load_profile(db: Database, *, user_id: int, phone: str, role: str) -> dict[str, Any]:
    profile: dict[str, Any] = {"id": user_id, "phone": phone, "role": role}
    if role == UserRole.ADMIN.value:
        profile["full_name"] = ADMIN_DISPLAY_NAME
        return profile
    row = (await db.execute(_PROFILE_QUERIES[role], [user_id])).first()
    if row:
        profile.update(row)
    return profile


async def login_user(db: Database, *, phone: str, password: str, role: UserRole) -> dict[str, Any]:
    user = (
        await db.execute(
            "SELECT id, phone, password_hash, role, is_first_login, is_active FROM users WHERE phone = $1",
            [phone],
        )
    ).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid phone number or password")
    if not user["is_active"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account suspended, please contact an admin")
    if user["role"] != role.value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Role does not match this account")
    if not await run_in_threadpool(verify_password, password, user["password_hash"]):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid phone number or password")

    profile = await load_profile(db, user_id=user["id"], phone=user["phone"], role=user["role"])
    profile["is_first_login"] = user["is_first_login"]
    return {"token": create_access_token(user["id"], user["role"]), "user": profile}


async def change_password(
    db: Database, *, user_id: int, old_password: str | None, new_password: str
) -> None:
    user = (
        await db.execute("SELECT password_hash, is_first_login FROM users WHERE id = $1", [user_id])
    ).first()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if not user["is_first_login"]:
        if not old_password:
            raise HTTPException(status_code=400, detail="Current password is required")
        if not await run_in_threadpool(verify_password, old_password, user["password_hash"]):
            raise HTTPException(status_code=400, detail="Current password is incorrect")

    password_hash = await run_in_threadpool(hash_password, new_password)
    await db.execute(
        "UPDATE users SET password_hash = $1, is_first_login = false WHERE id = $2",
        [password_hash, user_id],
    )


# --- grading ---


def parse_score(value: Any) -> Decimal:
    """Coerce a score cell to Decimal; blanks and junk count as zero."""
    if value is None or value == "":
        return Decimal("0")
    try:
        score = Decimal(str(value).strip())
    except InvalidOperation:
        return Decimal("0")
    return score if score.is_finite() else Decimal("0")


def score_components(scores: Any) -> dict[str, Decimal]:
    get = scores.get if isinstance(scores, dict) else lambda name, default: getattr(scores, name, default)
    return {name: parse_score(get(name, 0)) for name in SCORE_FIELDS}


def total_score(scores: Any) -> Decimal:
    """Sum the six score components of a grade entry or row."""
    return sum(score_components(scores).values(), Decimal("0"))


def letter_grade(total: Decimal | float | int) -> str:
    total = Decimal(str(total))
    for threshold, letter in GRADE_THRESHOLDS:
        if total >= threshold:
            return letter
    return "F"


GRADE_UPSERT = f"""
    INSERT INTO grades (student_id, subject_id, room_id, teacher_id, {", ".join(SCORE_FIELDS)},
                        total_score, grade, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, now())
    ON CONFLICT (student_id, subject_id) DO UPDATE SET
        {", ".join(f"{name} = EXCLUDED.{name}" for name in SCORE_FIELDS)},
        total_score = EXCLUDED.total_score,
        grade = EXCLUDED.grade,
        room_id = EXCLUDED.room_id,
        teacher_id = EXCLUDED.teacher_id,
        updated_at = now()
    RETURNING id
"""


async def upsert_grade(
    tx: Transaction, *, student_id: int, subject_id: int, room_id: int, teacher_id: int, scores: Any
) -> str:
    """Store one student's scores with the derived total and letter; returns the letter."""
    components = score_components(scores)
    total = sum(components.values(), Decimal("0"))
    grade = letter_grade(total)
    await tx.query(
        GRADE_UPSERT,
        [student_id, subject_id, room_id, teacher_id, *components.values(), total, grade],
    )
    return grade


def _two_places(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def gpa_summary(grades: list[dict[str, Any]]) -> dict[str, Any]:
    """GPA on the 4-point scale plus the letter distribution of ``grades`` rows."""
    distribution = {letter: 0 for letter in GRADE_POINTS}
    for row in grades:
        letter = row.get("grade")
        if letter in distribution:
            distribution[letter] += 1

    count = len(grades)
    if not count:
        return {"gpa": 0.0, "total_subjects": 0, "average_score": "0.00", "grade_distribution": distribution}

    points = sum((GRADE_POINTS[letter] * n for letter, n in distribution.items()), Decimal("0"))
    totals = sum((Decimal(str(row.get("total_score") or 0)) for row in grades), Decimal("0"))
    return {
        "gpa": float(_two_places(points / count)),
        "total_subjects": count,
        "average_score": str(_two_places(totals / count)),
        "grade_distribution": distribution,
    }


# --- attendance ---

# Academic years are numbered in the Buddhist era.
BUDDHIST_YEAR_SQL = "EXTRACT(YEAR FROM {column} + INTERVAL '543 years')"


def attendance_counts(column: str = "status", *, total_column: str = "*", total_alias: str = "total_days") -> str:
    """SELECT-list fragment counting rows per attendance status."""
    parts = [f"COUNT({total_column}) AS {total_alias}"]
    parts += [f"COUNT(*) FILTER (WHERE {column} = '{s.value}') AS {s.value}" for s in AttendanceStatus]
    return ", ".join(parts)


def attendance_stats(rows: list[dict[str, Any]]) -> dict[str, Any]:
    """Fold per-type count rows into homeroom, subject and overall totals."""
    keys = [s.value for s in AttendanceStatus] + ["total_days"]
    stats: dict[str, Any] = {"homeroom": None, "subject": None, "total": dict.fromkeys(keys, 0)}
    for row in rows:
        if row.get("attendance_type") in ("homeroom", "subject"):
            stats[row["attendance_type"]] = row
        for key in keys:
            stats["total"][key] += int(row.get(key) or 0)
    return stats


# --- shared lookups ---


async def get_teacher(db: Database, user: CurrentUser, columns: str = "id") -> dict[str, Any]:
    row = (await db.execute(f"SELECT {columns} FROM teachers WHERE user_id = $1", [user.id])).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Teacher profile not found")
    return row


async def get_student(db: Database, user: CurrentUser, columns: str = "id") -> dict[str, Any]:
    row = (await db.execute(f"SELECT {columns} FROM students WHERE user_id = $1", [user.id])).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Student profile not found")
    return row


async def teacher_has_room(db: Database, teacher_id: int, room_id: int) -> dict[str, Any] | None:
    return (
        await db.execute(
            "SELECT is_homeroom FROM teacher_rooms WHERE teacher_id = $1 AND room_id = $2",
            [teacher_id, room_id],
        )
    ).first()


async def ensure_teaches(db: Database, teacher_id: int, subject_id: int, room_id: int) -> None:
    subject = await db.execute(
        "SELECT 1 FROM teacher_subjects WHERE teacher_id = $1 AND subject_id = $2", [teacher_id, subject_id]
    )
    if not subject.row_count:
        raise HTTPException(status_code=403, detail="You do not teach this subject")
    if await teacher_has_room(db, teacher_id, room_id) is None:
        raise HTTPException(status_code=403, detail="You do not teach this room")


def build_update(table: str, changes: dict[str, Any], key: Any, *, touch: bool = True) -> tuple[str, list[Any]]:
    """Build an ``UPDATE ... RETURNING *`` for the given column changes."""
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    assignments = [f"{column} = ${index}" for index, column in enumerate(changes, start=1)]
    if touch:
        assignments.append("updated_at = now()")
    params = [*changes.values(), key]
    sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ${len(params)} RETURNING *"
    return sql, params


def require_row(result: QueryResult, detail: str) -> dict[str, Any]:
    row = result.first()
    if row is None:
        raise HTTPException(status_code=404, detail=detail)
    return row


def expose_otp() -> bool:
    return settings.is_development
