import json

import pytest

from voice_tutor.lessons import LessonProvider, lesson_from_dict


def test_bundled_lesson_loads():
    lesson = LessonProvider().get("division-with-remainders-1")
    assert lesson is not None
    assert len(lesson) == 2
    assert lesson.stage(0).problem
    with pytest.raises(IndexError):
        lesson.stage(2)


def test_lesson_from_directory(tmp_path):
    (tmp_path / "fractions").mkdir()
    (tmp_path / "fractions" / "lesson.json").write_text(
        json.dumps(
            {
                "lesson_id": "fractions",
                "title": "Fractions",
                "learning_goal": "Halves",
                "stages": [
                    {
                        "stage_id": 1,
                        "problem": "Half of 8",
                        "success_criteria": "Says 4",
                        "context_for_agent": "Use cookies",
                    }
                ],
            }
        )
    )
    provider = LessonProvider(lessons_dir=tmp_path)

    lesson = provider.get("fractions")
    assert lesson.stage(0).guidance == "Use cookies"
    assert provider.get("fractions") is lesson
    assert lesson.to_dict()["stages"][0]["problem"] == "Half of 8"


@pytest.mark.parametrize("lesson_id", ["missing", "../etc", ".hidden", ""])
def test_unknown_or_unsafe_ids_return_none(tmp_path, lesson_id):
    assert LessonProvider(lessons_dir=tmp_path).get(lesson_id) is None


def test_lesson_without_stages_is_rejected():
    with pytest.raises(ValueError):
        lesson_from_dict({"lesson_id": "empty", "stages": []})
