"""
Tests for run and history persistence.
"""

RECORD = {
    "prompt": "PROMPT<Studio Prompt - Front View>",
    "imageUrl": "https://replicate.delivery/front.png",
    "title": "Studio Prompt - Front View",
    "aspectRatio": "3:4",
    "model": "flux-kontext-apps/multi-image-list",
}


def _snapshot():
    return {
        "analysis": {"itemAnalysis": "a", "qaChecklist": "b", "initialPrompt": "c", "photoshootType": "garment"},
        "qa_image": "https://replicate.delivery/qa.png",
        "prompts": [{"title": "Studio Prompt - Front View", "prompt": "p"}],
        "tasks": [{"id": "t1", "title": "Studio Prompt - Front View", "status": "succeeded"}],
        "anchor": "https://replicate.delivery/front.png",
    }


class TestRuns:
    """Tests for the runs table."""

    def test_create_and_get(self, temp_db):
        temp_db.create_run("r1", "garment", "simple", "all", {"aspect_ratio": "3:4"})
        run = temp_db.get_run("r1")
        assert run["status"] == "pending"
        assert run["settings"] == {"aspect_ratio": "3:4"}
        assert run["tasks"] is None

    def test_missing_run(self, temp_db):
        assert temp_db.get_run("nope") is None

    def test_finish_stores_artifacts(self, temp_db):
        temp_db.create_run("r1", "garment", "simple", "all", {})
        result = dict(_snapshot(), status="partial", duration=42.5)

        temp_db.finish_run("r1", result)

        run = temp_db.get_run("r1")
        assert run["status"] == "partial"
        assert run["duration"] == 42.5
        assert run["analysis"]["itemAnalysis"] == "a"
        assert run["prompts"] == [{"title": "Studio Prompt - Front View", "prompt": "p"}]
        assert run["tasks"][0]["id"] == "t1"
        assert run["anchor"] == "https://replicate.delivery/front.png"

    def test_fail_run(self, temp_db):
        temp_db.create_run("r1", "product", "advanced", "studio", {})
        temp_db.set_run_status("r1", "running")
        temp_db.fail_run("r1", "Quota exceeded")
        run = temp_db.get_run("r1")
        assert run["status"] == "failed"
        assert run["error_msg"] == "Quota exceeded"

    def test_list_runs_newest_first(self, temp_db):
        for run_id in ("r1", "r2", "r3"):
            temp_db.create_run(run_id, "garment", "simple", "all", {})
        assert [r["id"] for r in temp_db.list_runs()] == ["r3", "r2", "r1"]
        assert len(temp_db.list_runs(limit=2)) == 2


class TestHistory:
    """Tests for the generated-image history."""

    def test_save_and_get(self, temp_db):
        history_id = temp_db.save_history(RECORD, run_id="r1")
        item = temp_db.get_history(history_id)
        assert item["runId"] == "r1"
        assert item["imageUrl"] == RECORD["imageUrl"]
        assert item["aspectRatio"] == "3:4"
        assert item["metadata"] == {"model": RECORD["model"], "editHistory": []}
        assert item["createdAt"]

    def test_newest_first(self, temp_db):
        ids = [temp_db.save_history(dict(RECORD, title=f"t{i}")) for i in range(3)]
        assert [h["id"] for h in temp_db.list_history()] == list(reversed(ids))
        assert [h["id"] for h in temp_db.list_history(limit=2)] == [ids[2], ids[1]]

    def test_history_saver_binds_run(self, temp_db):
        temp_db.history_saver("r9")(RECORD)
        assert temp_db.list_history()[0]["runId"] == "r9"

    def test_delete(self, temp_db):
        history_id = temp_db.save_history(RECORD)
        assert temp_db.delete_history(history_id) is True
        assert temp_db.get_history(history_id) is None
        assert temp_db.delete_history(history_id) is False

    def test_append_edit(self, temp_db):
        history_id = temp_db.save_history(RECORD)
        temp_db.append_edit(history_id, "Add dramatic shadows", "https://replicate.delivery/e1.png")
        item = temp_db.append_edit(history_id, "Change to black and white", "https://replicate.delivery/e2.png")

        edits = item["metadata"]["editHistory"]
        assert [e["prompt"] for e in edits] == ["Add dramatic shadows", "Change to black and white"]
        assert temp_db.get_history(history_id)["metadata"]["editHistory"] == edits

    def test_append_edit_unknown_item(self, temp_db):
        assert temp_db.append_edit("nope", "p", "https://x") is None
