"""Lookups for the organizational records this service only reads (users, teachers, students, exams)."""

from typing import Optional

from app.errors import NotFound, ValidationFailure
from app.models.user import Role


async def get_exam_or_404(db, exam_id: str) -> dict:
    exam = await db.exams.find_one({"exam_id": exam_id}, {"_id": 0})
    if not exam:
        raise NotFound("Exam not found")
    return exam


async def get_student_or_404(db, student_id: str) -> dict:
    student = await db.students.find_one({"student_id": student_id}, {"_id": 0})
    if not student:
        raise NotFound("Student not found")
    return student


async def get_exam_and_student(db, exam_id: str, student_id: str):
    exam = await get_exam_or_404(db, exam_id)
    student = await get_student_or_404(db, student_id)
    if exam.get("class_id") and student.get("class_id") and exam["class_id"] != student["class_id"]:
        raise ValidationFailure("Student is not enrolled in the exam's class")
    return exam, student


async def get_user(db, user_id: str) -> Optional[dict]:
    return await db.users.find_one({"user_id": user_id}, {"_id": 0})


async def admin_of_teacher(db, teacher_id: str) -> Optional[str]:
    teacher = await db.teachers.find_one({"user_id": teacher_id}, {"_id": 0, "admin_id": 1})
    return teacher.get("admin_id") if teacher else None


async def responsible_admin(db, exam: dict, reporter_id: str, reporter_role: str = None) -> Optional[str]:
    """The admin who owns the exam, else the reporter's admin, else the reporter when they are an admin."""
    if exam.get("admin_id"):
        return exam["admin_id"]
    admin_id = await admin_of_teacher(db, reporter_id)
    if admin_id:
        return admin_id
    if reporter_role in (Role.ADMIN.value, Role.SUPER_ADMIN.value):
        return reporter_id
    return None
