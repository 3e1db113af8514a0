import pytest

from conductor.complexity import ComplexityEvaluator, ComplexityLevel


@pytest.mark.parametrize("request_text", ["Hello", "What is a closure?", "list the files here"])
def test_short_questions_are_answered_directly(request_text: str) -> None:
    evaluator = ComplexityEvaluator()

    assert evaluator.evaluate(request_text) == ComplexityLevel.SIMPLE
    assert evaluator.should_use_workflow(request_text) is False


@pytest.mark.parametrize(
    "request_text",
    [
        "Design and implement a user authentication system",
        "Analyze the entire codebase and refactor all error handling",
        "Explore the repository, find every TODO, then create a task list",
        "Migrate the settings module",
    ],
)
def test_multi_step_work_uses_the_workflow(request_text: str) -> None:
    assert ComplexityEvaluator().should_use_workflow(request_text) is True


def test_levels_follow_score_thresholds() -> None:
    evaluator = ComplexityEvaluator()

    assert evaluator.evaluate("Analyze this function") == ComplexityLevel.MEDIUM
    assert evaluator.score("Analyze this function") == pytest.approx(0.5)
    assert evaluator.evaluate(
        "Design and implement a complete login flow with registration and password reset"
    ) == ComplexityLevel.COMPLEX


def test_keywords_match_whole_words_only() -> None:
    evaluator = ComplexityEvaluator()

    assert evaluator.score("this thing") == 0.0
    assert evaluator.score("hi") == 0.0
    assert evaluator.score("planet") == 0.0
    assert evaluator.score("plan") == pytest.approx(0.8)


def test_explicit_markers_override_the_score() -> None:
    evaluator = ComplexityEvaluator()

    assert evaluator.explicit_mode("fix the typo #workflow") is True
    assert evaluator.should_use_workflow("fix the typo #workflow") is True
    assert evaluator.should_use_workflow("Refactor the entire codebase #simple") is False
    assert evaluator.explicit_mode("refactor the parser") is None


def test_levels_expose_workflow_choice_and_confidence() -> None:
    assert ComplexityLevel.SIMPLE.uses_workflow is False
    assert ComplexityLevel.MEDIUM.uses_workflow is True
    assert ComplexityLevel.COMPLEX.confidence == 0.9
