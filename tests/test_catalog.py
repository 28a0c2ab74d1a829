import pytest

from exambot.core.errors import DuplicateExamName
from exambot.models.orm import UNCATEGORIZED
from exambot.models.schemas import ExamDef, QuizResult
from exambot.models.session import QuestionSpec

from tests.conftest import make_questions


async def test_exam_and_questions_are_committed_together(catalog, make_exam):
    created = await make_exam("math101", time_per_question=30)
    assert created.question_count == 3

    assert await catalog.exam_exists("math101")
    exam = await catalog.get_exam("math101")
    assert exam.time_per_question == 30
    assert exam.category_name == "Math"
    assert await catalog.get_exam_questions("math101") == make_questions()


async def test_duplicate_exam_writes_nothing(catalog, make_exam):
    await make_exam("math101")
    replacement = [QuestionSpec(question_text="new?", options=["a", "b"], correct_option_index=0)]
    with pytest.raises(DuplicateExamName):
        await make_exam("math101", questions=replacement, time_per_question=10)

    assert (await catalog.get_exam("math101")).time_per_question == 0
    assert await catalog.get_exam_questions("math101") == make_questions()


async def test_duplicate_exam_leaves_no_new_category(catalog, make_exam):
    await make_exam("math101", category_name="Math")
    with pytest.raises(DuplicateExamName):
        await make_exam("math101", category_name="Physics")

    assert [c.name for c in await catalog.list_categories()] == ["Math"]


async def test_missing_exam(catalog):
    assert not await catalog.exam_exists("nope")
    assert await catalog.get_exam("nope") is None
    assert await catalog.get_exam_questions("nope") == []


async def test_list_exams_by_category(catalog, make_exam):
    await make_exam("algebra", category_name="Math")
    await make_exam("optics", category_name="Physics")
    await make_exam("calculus", category_name="Math")

    assert sorted(e.exam_id for e in await catalog.list_exams()) == ["algebra", "calculus", "optics"]
    assert sorted(e.exam_id for e in await catalog.list_exams("Math")) == ["algebra", "calculus"]
    assert await catalog.list_exams("History") == []


async def test_categories_sort_by_display_order_with_unordered_last(catalog, make_exam):
    await make_exam("misc", category_name=UNCATEGORIZED)
    await catalog.add_category("Physics", display_order=2)
    await catalog.add_category("Math", display_order=1)
    biology = await catalog.add_category("Biology")

    assert biology.display_order == 3
    assert [c.name for c in await catalog.list_categories()] == ["Math", "Physics", "Biology", UNCATEGORIZED]


async def test_add_category_returns_existing(catalog):
    first = await catalog.add_category("Math", display_order=5)
    again = await catalog.add_category("Math")
    assert again == first
    assert len(await catalog.list_categories()) == 1


async def test_register_user_reports_first_contact_only(catalog):
    assert await catalog.register_user("1", "alice", "Alice")
    assert not await catalog.register_user("1", "alice", "Alice")
    assert await catalog.register_user("2", None, "Bob")
    assert await catalog.count_users() == 2


async def test_record_result_is_idempotent_per_attempt(catalog):
    result = QuizResult(attempt_id="a1", user_id="7", exam_id="math101", score=2, total=3)
    assert not await catalog.has_result("7", "math101")
    assert await catalog.record_result(result)
    assert not await catalog.record_result(result)
    assert await catalog.has_result("7", "math101")
    assert not await catalog.has_result("8", "math101")


async def test_exam_without_questions_can_exist(catalog):
    exam = ExamDef(exam_id="empty", allow_retake=True, time_per_question=0, category_name="Math", question_count=0)
    await catalog.create_exam_with_questions(exam, [])
    assert await catalog.exam_exists("empty")
    assert await catalog.get_exam_questions("empty") == []
