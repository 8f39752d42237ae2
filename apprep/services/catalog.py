"""Course catalog for apprep.

Loads the AP course and unit descriptions that feed the generation prompt,
and resolves the "all units" and "range of units" selections into a single
concrete unit before a question is fetched.
"""

import json
import logging
import os
import random
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from apprep.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "courses.json"
COURSE_CATALOG_PATH = os.environ.get("COURSE_CATALOG_PATH", str(DEFAULT_CATALOG_PATH))

# Legacy client encoding for a unit range: "__custom__|<from>|<to>"
CUSTOM_RANGE_PREFIX = "__custom__"


@dataclass
class UnitContext:
    """Prompt context for one unit of a course."""

    description: str = ""
    topics: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    course_notes: str = ""


@lru_cache(maxsize=4)
def load_catalog(path: str = COURSE_CATALOG_PATH) -> dict:
    """Load and cache the course catalog JSON.

    A missing or unreadable file yields an empty catalog so the service can
    still generate questions without unit context.
    """
    try:
        with open(path, encoding="utf-8") as f:
            catalog = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load course catalog from {path}: {e}")
        return {"courses": []}

    logger.info(f"Loaded {len(catalog.get('courses', []))} courses from {path}")
    return catalog


def _norm(value) -> str:
    return str(value or "").strip().lower()


def list_courses() -> list[str]:
    """Names of every course in the catalog."""
    return [course["name"] for course in load_catalog().get("courses", [])]


def find_course(subject: str) -> Optional[dict]:
    """Find a course by name or code, tolerating partial names.

    "AP Biology", "ap biology" and "Biology" all match the same course.
    """
    wanted = _norm(subject)
    if not wanted:
        return None

    for course in load_catalog().get("courses", []):
        names = [_norm(course.get("code")), _norm(course.get("name"))]
        for name in filter(None, names):
            if name == wanted or name in wanted or wanted in name:
                return course
    return None


def get_units(subject: str) -> list[str]:
    """Unit titles for a course, in catalog order. Empty if unknown."""
    course = find_course(subject)
    if not course:
        return []
    return [unit["title"] for unit in course.get("units", [])]


def find_unit(course: dict, topic: str) -> Optional[dict]:
    """Match a unit by its number first, then by title substring."""
    units = course.get("units", [])
    wanted = _norm(topic)

    number_match = re.search(r"\d+", topic)
    if number_match:
        number = int(number_match.group(0))
        for unit in units:
            if unit.get("number") == number or f"unit {number}" in _norm(unit.get("title")):
                return unit

    for unit in units:
        title = _norm(unit.get("title"))
        if wanted in title or title in wanted:
            return unit
    return None


def get_unit_context(subject: str, topic: str) -> Optional[UnitContext]:
    """Look up the prompt context for a (course, unit) pair.

    Returns only the course notes when the course is known but the unit is
    not, and None when nothing matches.
    """
    if not subject or not topic:
        return None

    course = find_course(subject)
    if not course:
        return None

    notes = course.get("notes", "")
    unit = find_unit(course, topic)
    if unit:
        return UnitContext(
            description=unit.get("description", ""),
            topics=list(unit.get("topics", [])),
            keywords=list(unit.get("keywords", [])),
            course_notes=notes,
        )
    if notes:
        return UnitContext(course_notes=notes)
    return None


def parse_custom_range(topic: str) -> tuple[int, int]:
    """Parse "__custom__|from|to" into an ordered (from, to) index pair."""
    parts = topic.split("|")
    if len(parts) != 3:
        raise ValidationError(f"Malformed unit range: {topic}")
    try:
        start, end = int(parts[1]), int(parts[2])
    except ValueError:
        raise ValidationError(f"Malformed unit range: {topic}")
    return min(start, end), max(start, end)


def resolve_topic(
    subject: str,
    topic: Optional[str] = None,
    unit_range: Optional[list[int]] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """Resolve a unit selection to one concrete unit title.

    Args:
        subject: Course name
        topic: A unit title, empty for "all units", or the legacy
            "__custom__|from|to" range string
        unit_range: Inclusive 0-based [from, to] unit indices
        rng: Random source, injectable for tests

    Returns:
        The unit to fetch a question for. A concrete topic is returned as is.

    Raises:
        ValidationError: If the selection needs the catalog and the course
            has no units, or the range is malformed or out of bounds.
    """
    rng = rng or random
    topic = (topic or "").strip()

    if topic.startswith(CUSTOM_RANGE_PREFIX):
        unit_range = list(parse_custom_range(topic))
        topic = ""

    if topic:
        return topic

    units = get_units(subject)
    if not units:
        raise ValidationError(f"No units known for subject '{subject}'")

    if unit_range is None:
        return rng.choice(units)

    if len(unit_range) != 2:
        raise ValidationError("unit_range must be [from, to]")
    start, end = min(unit_range), max(unit_range)
    if start < 0 or end >= len(units):
        raise ValidationError(
            f"unit_range {unit_range} is outside 0..{len(units) - 1} for '{subject}'"
        )
    return rng.choice(units[start:end + 1])
