import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_DEFAULT_LESSONS_DIR = Path(__file__).resolve().parent / "lesson_data"


@dataclass(frozen=True)
class Stage:
    stage_id: int
    problem: str
    success_criteria: str
    guidance: str = ""
    image_path: str | None = None

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "problem": self.problem,
            "success_criteria": self.success_criteria,
            "guidance": self.guidance,
            "image_path": self.image_path,
        }


@dataclass(frozen=True)
class Lesson:
    lesson_id: str
    title: str
    learning_goal: str
    stages: tuple[Stage, ...]

    def __len__(self) -> int:
        return len(self.stages)

    def stage(self, index: int) -> Stage:
        if not 0 <= index < len(self.stages):
            raise IndexError(f"lesson {self.lesson_id} has no stage {index}")
        return self.stages[index]

    def to_dict(self) -> dict:
        return {
            "lesson_id": self.lesson_id,
            "title": self.title,
            "learning_goal": self.learning_goal,
            "stages": [s.to_dict() for s in self.stages],
        }


def lesson_from_dict(data: dict) -> Lesson:
    stages = tuple(
        Stage(
            stage_id=int(raw["stage_id"]),
            problem=raw["problem"],
            success_criteria=raw["success_criteria"],
            guidance=raw.get("guidance") or raw.get("context_for_agent") or "",
            image_path=raw.get("image_path"),
        )
        for raw in data.get("stages", [])
    )
    if not stages:
        raise ValueError(f"lesson {data.get('lesson_id')!r} has no stages")
    return Lesson(
        lesson_id=data["lesson_id"],
        title=data.get("title", ""),
        learning_goal=data.get("learning_goal", ""),
        stages=stages,
    )


class LessonProvider:
    """Read-only lesson store backed by `<lessons_dir>/<lesson_id>/lesson.json`."""

    def __init__(self, lessons_dir: str | Path | None = None):
        self.lessons_dir = Path(lessons_dir or os.getenv("LESSONS_DIR") or _DEFAULT_LESSONS_DIR)
        self._cache: dict[str, Lesson] = {}

    def get(self, lesson_id: str) -> Lesson | None:
        if lesson_id in self._cache:
            return self._cache[lesson_id]

        # Lesson ids are directory names; refuse anything that could walk out.
        if not lesson_id or "/" in lesson_id or "\\" in lesson_id or lesson_id.startswith("."):
            return None

        path = self.lessons_dir / lesson_id / "lesson.json"
        if not path.is_file():
            logger.warning("[Lessons] lesson not found: %s", lesson_id)
            return None

        lesson = lesson_from_dict(json.loads(path.read_text(encoding="utf-8")))
        self._cache[lesson_id] = lesson
        return lesson

    def add(self, lesson: Lesson) -> None:
        self._cache[lesson.lesson_id] = lesson
