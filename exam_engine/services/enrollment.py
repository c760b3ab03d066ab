from sqlalchemy import select
from sqlalchemy.orm import Session
from exam_engine.models.orm import Enrollment

def is_enrolled(db: Session, student_id: str, course_id: str) -> bool:
    row = db.scalar(select(Enrollment).where(Enrollment.student_id == student_id, Enrollment.course_id == course_id))
    return bool(row and row.status == "active")

def enroll(db: Session, student_id: str, course_id: str, status: str = "active") -> Enrollment:
    row = db.scalar(select(Enrollment).where(Enrollment.student_id == student_id, Enrollment.course_id == course_id))
    if row: row.status = status
    else:
        row = Enrollment(student_id=student_id, course_id=course_id, status=status)
        db.add(row)
    db.commit(); db.refresh(row)
    return row
