"""
Tests for the photoshoot data model.
"""

import pytest

from models import (
    LIFESTYLE_TITLES,
    MARKETING_TITLES,
    STUDIO_TITLES,
    AnalysisResult,
    GenerationTask,
    PackType,
    PhotoshootType,
    RefinedPrompt,
    TaskCategory,
    TaskStatus,
    classify_title,
    expected_titles,
    is_front_title,
    is_valid_photoshoot_type,
    replace_task,
    select_pack,
    update_task,
    with_aspect_ratio,
)


def _prompts(include_marketing=False):
    return [RefinedPrompt(title=t, prompt_text=f"p {t}") for t in expected_titles(include_marketing)]


class TestTitles:
    """Tests for the title catalogue and classifier."""

    def test_expected_titles_default_is_eight(self):
        titles = expected_titles()
        assert titles == STUDIO_TITLES + LIFESTYLE_TITLES
        assert len(titles) == 8

    def test_expected_titles_with_marketing_is_twelve(self):
        assert expected_titles(include_marketing=True)[-4:] == MARKETING_TITLES
        assert len(expected_titles(include_marketing=True)) == 12

    @pytest.mark.parametrize("title,category", [
        ("Studio Prompt - Front View", TaskCategory.STUDIO),
        ("lifestyle prompt - scene 3", TaskCategory.LIFESTYLE),
        ("Marketing Prompt - Hero Shot", TaskCategory.MARKETING),
        ("Something else", TaskCategory.OTHER),
        ("", TaskCategory.OTHER),
    ])
    def test_classify_title(self, title, category):
        assert classify_title(title) == category

    def test_is_front_title(self):
        assert is_front_title("Studio Prompt - Front View")
        assert not is_front_title("Studio Prompt - Back View")

    def test_is_valid_photoshoot_type(self):
        assert is_valid_photoshoot_type("garment")
        assert is_valid_photoshoot_type("product")
        assert not is_valid_photoshoot_type("shoe")


class TestAnalysisResult:
    """Tests for multi-subject detection."""

    def test_single_subject(self):
        result = AnalysisResult("A red scarf.", "- red", "prompt")
        assert not result.is_multi_subject
        assert result.subject_sections() == ["A red scarf."]

    def test_two_subjects_are_split_on_headings(self):
        text = "**Item 1 (jacket):**\nBlue denim.\n\n**Item 2 (jeans):**\nBlack slim fit."
        result = AnalysisResult(text, "- checks", "prompt")
        assert result.is_multi_subject
        sections = result.subject_sections()
        assert len(sections) == 2
        assert sections[0].startswith("**Item 1 (jacket):**")
        assert "Black slim fit." in sections[1]

    def test_dict_round_trip_keeps_type(self):
        result = AnalysisResult("a", "b", "c", PhotoshootType.PRODUCT)
        assert AnalysisResult.from_dict(result.to_dict()) == result


class TestGenerationTask:
    """Tests for the task lifecycle."""

    def test_from_prompt_sets_category_once(self):
        task = GenerationTask.from_prompt(RefinedPrompt("Lifestyle Prompt - Scene 1", "x"), "1:1")
        assert task.category == TaskCategory.LIFESTYLE
        assert task.status == TaskStatus.PENDING
        assert task.aspect_ratio == "1:1"

    def test_happy_path(self):
        task = GenerationTask("t", "p")
        task.mark_generating()
        task.mark_succeeded("https://img/1.png")
        assert task.status == TaskStatus.SUCCEEDED
        assert task.result_image_url == "https://img/1.png"

    def test_pending_can_fail_directly(self):
        task = GenerationTask("t", "p")
        task.mark_failed("skipped")
        assert task.status == TaskStatus.FAILED
        assert task.error_message == "skipped"

    def test_cannot_succeed_without_generating(self):
        task = GenerationTask("t", "p")
        with pytest.raises(ValueError):
            task.mark_succeeded("https://img/1.png")

    def test_terminal_states_never_move(self):
        task = GenerationTask("t", "p")
        task.mark_generating()
        task.mark_failed("boom")
        with pytest.raises(ValueError):
            task.mark_generating()

    def test_spawn_retry_creates_fresh_pending_task(self):
        task = GenerationTask.from_prompt(RefinedPrompt("Studio Prompt - Side View", "p"), "4:3")
        task.mark_failed("boom")
        retry = task.spawn_retry()
        assert retry.id != task.id
        assert retry.retry_of == task.id
        assert retry.status == TaskStatus.PENDING
        assert retry.aspect_ratio == "4:3"
        assert retry.category == TaskCategory.STUDIO
        assert task.status == TaskStatus.FAILED

    def test_dict_round_trip(self):
        task = GenerationTask.from_prompt(RefinedPrompt("Studio Prompt - Front View", "p"))
        task.mark_generating()
        task.mark_succeeded("u")
        restored = GenerationTask.from_dict(task.to_dict())
        assert restored == task


class TestCollectionHelpers:
    """Tests for keyed updates and pack selection."""

    def test_update_task_only_touches_matching_id(self):
        tasks = [GenerationTask("a", "p"), GenerationTask("b", "p"), GenerationTask("c", "p")]
        updated = update_task(tasks, tasks[1].id, lambda t: with_aspect_ratio(t, "16:9"))
        assert [t.aspect_ratio for t in updated] == ["3:4", "16:9", "3:4"]
        assert updated[0] is tasks[0]
        assert updated[2] is tasks[2]
        assert tasks[1].aspect_ratio == "3:4"

    def test_update_task_unknown_id(self):
        with pytest.raises(KeyError):
            update_task([GenerationTask("a", "p")], "nope", lambda t: t)

    def test_replace_task_keeps_position(self):
        tasks = [GenerationTask("a", "p"), GenerationTask("b", "p")]
        fresh = tasks[0].spawn_retry()
        result = replace_task(tasks, tasks[0].id, fresh)
        assert result == [fresh, tasks[1]]

    def test_select_pack(self):
        prompts = _prompts(include_marketing=True)
        assert [p.title for p in select_pack(prompts, PackType.STUDIO)] == STUDIO_TITLES
        assert [p.title for p in select_pack(prompts, PackType.LIFESTYLE)] == LIFESTYLE_TITLES
        assert [p.title for p in select_pack(prompts, PackType.MARKETING)] == MARKETING_TITLES
        assert len(select_pack(prompts, PackType.ALL)) == 12

    def test_select_marketing_without_marketing_prompts_is_empty(self):
        assert select_pack(_prompts(), PackType.MARKETING) == []
