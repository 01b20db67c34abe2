"""
Hotmart purchase processing: find-or-create the buyer and enroll them in the
purchased course. Idempotent per transaction_id, so a webhook redelivery or a
queue retry never produces a second enrollment.

This is the processor the purchase queue runs; the queue itself never looks
inside a purchase.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from lms_server.schemas.purchase import HotmartPurchaseData, PurchaseResult
from lms_server.services.purchase_queue import PermanentJobError
from lms_server.services.supabase_client import SupabaseClient, SupabaseError
from lms_server.utils.logger import get_logger

log = get_logger(__name__)

ENROLLMENT_WITH_RELATIONS = "*,course:courses(*),user:users(*)"


class CourseNotFoundError(PermanentJobError):
    def __init__(self, course_id: str):
        self.course_id = course_id
        super().__init__(f"Course {course_id} not found or not published")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HotmartService:
    def __init__(self, db: SupabaseClient):
        self.db = db

    async def validate_course(self, course_id: str) -> Dict[str, Any]:
        """Return the course if it exists and is published"""
        course = await self.db.select_one(
            "courses",
            {"id": course_id, "is_published": True},
            columns="id,title,is_published",
        )
        if not course:
            raise CourseNotFoundError(course_id)
        return course

    async def create_user_from_purchase(self, data: HotmartPurchaseData) -> Dict[str, Any]:
        """Find the buyer by email or create a student account for them"""
        existing = await self.db.select_one("users", {"email": data.email})
        if existing:
            return existing

        now = _now()
        user = await self.db.insert(
            "users",
            {
                "email": data.email,
                "full_name": data.full_name,
                "phone": data.phone,
                "role": "student",
                "created_at": now,
                "updated_at": now,
            },
        )
        log.info(f"[hotmart] Created user {data.email}", extra={"transaction_id": data.transaction_id})
        return user

    async def enroll_user_in_course(
        self,
        user_id: str,
        course_id: str,
        transaction_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Enroll a user, returning the existing enrollment if there already is one"""
        existing = await self.db.select_one("enrollments", {"user_id": user_id, "course_id": course_id})
        if existing:
            return existing

        try:
            return await self.db.insert(
                "enrollments",
                {
                    "user_id": user_id,
                    "course_id": course_id,
                    "enrolled_at": _now(),
                    "progress_percentage": 0,
                    "last_accessed_at": None,
                    "transaction_id": transaction_id,
                },
                columns=ENROLLMENT_WITH_RELATIONS,
            )
        except SupabaseError as exc:
            if not (exc.is_unique_violation or "unique_user_course_enrollment" in str(exc)):
                raise

        # Lost a race with a concurrent enrollment for the same user/course
        log.info(
            f"[hotmart] Enrollment race for user {user_id}, fetching existing row",
            extra={"course_id": course_id},
        )
        enrollment = await self.db.select_one(
            "enrollments",
            {"user_id": user_id, "course_id": course_id},
            columns=ENROLLMENT_WITH_RELATIONS,
        )
        if not enrollment:
            raise SupabaseError(
                500, f"Could not create or find enrollment for user {user_id} in course {course_id}"
            )
        return enrollment

    async def process_purchase(self, data: HotmartPurchaseData) -> PurchaseResult:
        processed = await self.db.select_one(
            "enrollments",
            {"transaction_id": data.transaction_id},
            columns="*,user:users(*)",
        )
        if processed:
            log.info(
                "[hotmart] Transaction already processed",
                extra={"transaction_id": data.transaction_id},
            )
            user = processed.pop("user", None) or {}
            return PurchaseResult(
                user=user,
                enrollment=processed,
                is_new_user=False,
                is_new_enrollment=False,
                transaction_already_processed=True,
            )

        await self.validate_course(data.course_id)

        is_new_user = await self.db.select_one("users", {"email": data.email}) is None
        user = await self.create_user_from_purchase(data)

        existing = await self.db.select_one(
            "enrollments", {"user_id": user["id"], "course_id": data.course_id}
        )
        if existing:
            enrollment = await self.db.update(
                "enrollments",
                {"id": existing["id"]},
                {"transaction_id": data.transaction_id, "updated_at": _now()},
            ) or existing
            is_new_enrollment = False
            log.info(
                f"[hotmart] {data.email} was already enrolled",
                extra={"course_id": data.course_id, "transaction_id": data.transaction_id},
            )
        else:
            enrollment = await self.enroll_user_in_course(user["id"], data.course_id, data.transaction_id)
            is_new_enrollment = True

        return PurchaseResult(
            user=user,
            enrollment=enrollment,
            is_new_user=is_new_user,
            is_new_enrollment=is_new_enrollment,
        )
