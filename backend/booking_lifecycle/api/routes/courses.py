"""
Course configuration: catalog data, edit rules and cancellation tiers.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from booking_lifecycle.api.dependencies import get_container, require_staff
from booking_lifecycle.container import Container
from booking_lifecycle.core.errors import ValidationError
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.schemas.audit import Actor
from booking_lifecycle.schemas.course import Course, CourseEditRules
from booking_lifecycle.schemas.edit import PolicyInfo
from booking_lifecycle.schemas.policy import CancellationPolicy

logger = get_logger(__name__)
router = APIRouter(prefix="/courses", tags=["Courses"])


@router.get("/{course_id}/policies", response_model=PolicyInfo)
async def get_policies(course_id: str, container: Container = Depends(get_container)):
    """Human-readable cancellation, reschedule and refund policy."""
    course = await container.edits.get_course(course_id)
    return await container.edits.policies_info(course)


@router.put("/{course_id}", response_model=Course)
async def upsert_course(
    course_id: str,
    course: Course,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    if course.id != course_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Course id does not match path")
    saved = await container.courses.save_course(course)
    logger.info("course_saved", course_id=course_id, actor_id=actor.id)
    return saved


@router.get("/{course_id}/rules", response_model=CourseEditRules)
async def get_rules(course_id: str, container: Container = Depends(get_container)):
    await container.edits.get_course(course_id)
    return await container.courses.get_edit_rules(course_id)


@router.put("/{course_id}/rules", response_model=CourseEditRules)
async def set_rules(
    course_id: str,
    rules: CourseEditRules,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    await container.edits.get_course(course_id)
    await container.courses.set_edit_rules(course_id, rules)
    logger.info("course_rules_updated", course_id=course_id, actor_id=actor.id)
    return rules


@router.get("/{course_id}/cancellation-policies", response_model=list[CancellationPolicy])
async def get_cancellation_policies(course_id: str, container: Container = Depends(get_container)):
    await container.edits.get_course(course_id)
    return await container.courses.get_cancellation_policies(course_id)


@router.put("/{course_id}/cancellation-policies", response_model=list[CancellationPolicy])
async def set_cancellation_policies(
    course_id: str,
    policies: list[CancellationPolicy],
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    if not policies:
        raise ValidationError("At least one cancellation tier is required")
    await container.edits.get_course(course_id)
    await container.courses.set_cancellation_policies(course_id, policies)
    logger.info("cancellation_policies_updated", course_id=course_id, tiers=len(policies), actor_id=actor.id)
    return await container.courses.get_cancellation_policies(course_id)
