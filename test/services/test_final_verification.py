"""Unit tests for the final-verification prompt and parser."""

from ralph_controller.services.final_verification import (
    build_verification_prompt,
    parse_verification_result,
)

CLEAN_BLOCK = (
    "---VERIFICATION_RESULT---\n"
    "REMAINING_TASKS:\n"
    "None\n"
    "WAITING_VERIFICATION:\n"
    "None\n"
    "CODE_QUALITY_ISSUES:\n"
    "None\n"
    "SUMMARY: done\n"
    "---END_VERIFICATION---"
)


class TestBuildPrompt:
    def test_contains_markers_and_format(self):
        prompt = build_verification_prompt()

        assert "---FINAL_VERIFICATION_REQUEST---" in prompt
        assert "---VERIFICATION_RESULT---" in prompt
        assert "REMAINING_TASKS:" in prompt
        assert "---END_VERIFICATION---" in prompt
        assert "Implementation Plan to Verify" not in prompt

    def test_embeds_plan_file(self, tmp_path):
        plan = tmp_path / "implementation_plan.md"
        plan.write_text("- [x] parser\n- [ ] cli\n")

        prompt = build_verification_prompt(str(plan))

        assert "## Implementation Plan to Verify:" in prompt
        assert "- [ ] cli" in prompt

    def test_missing_plan_file_is_skipped(self, tmp_path):
        prompt = build_verification_prompt(str(tmp_path / "missing.md"))

        assert "Implementation Plan to Verify" not in prompt


class TestParseVerificationResult:
    def test_no_block_returns_none(self):
        assert parse_verification_result("All done, I promise.") is None

    def test_clean_block_is_complete(self):
        result = parse_verification_result(CLEAN_BLOCK)

        assert result.all_tasks_complete is True
        assert result.incomplete_tasks == []
        assert result.summary == "done"

    def test_stray_unchecked_box_forces_incomplete(self):
        output = "Reviewed the plan.\n- [ ] fix bug\n" + CLEAN_BLOCK

        result = parse_verification_result(output)

        assert result.all_tasks_complete is False
        assert "Found 1 unchecked task marker(s) in output" in result.incomplete_tasks

    def test_question_mark_box_counts_as_unchecked(self):
        output = "- [?] confirm export\n- [x] parser\n" + CLEAN_BLOCK

        result = parse_verification_result(output)

        assert result.all_tasks_complete is False
        assert "Found 1 unchecked task marker(s) in output" in result.incomplete_tasks

    def test_section_items_are_merged_and_tagged(self):
        output = (
            "---VERIFICATION_RESULT---\n"
            "REMAINING_TASKS:\n"
            "- CLI: missing --json flag\n"
            "WAITING_VERIFICATION:\n"
            "- export to csv\n"
            "CODE_QUALITY_ISSUES:\n"
            "- duplicated parsing code\n"
            "SUMMARY: two gaps left\n"
            "---END_VERIFICATION---"
        )

        result = parse_verification_result(output)

        assert result.all_tasks_complete is False
        assert result.incomplete_tasks == [
            "CLI: missing --json flag",
            "Awaiting verification: export to csv",
            "Code quality: duplicated parsing code",
        ]
        assert result.summary == "two gaps left"

    def test_inline_none_values(self):
        output = (
            "---VERIFICATION_RESULT---\n"
            "REMAINING_TASKS: None\n"
            "WAITING_VERIFICATION: None\n"
            "CODE_QUALITY_ISSUES: None\n"
            "COMPLETED_TASKS:\n"
            "- parser\n"
            "- cli\n"
            "SUMMARY: all good\n"
            "---END_VERIFICATION---"
        )

        result = parse_verification_result(output)

        assert result.all_tasks_complete is True
        assert result.completed_tasks == ["parser", "cli"]

    def test_incomplete_section_header_elsewhere(self):
        output = "## Remaining tasks\n- wire up the CLI\n\n" + CLEAN_BLOCK

        result = parse_verification_result(output)

        assert result.all_tasks_complete is False
        assert "Found incomplete section: 'Remaining tasks'" in result.incomplete_tasks

    def test_incomplete_header_followed_by_none_is_ignored(self):
        output = "Remaining tasks:\n- None\n\n" + CLEAN_BLOCK

        result = parse_verification_result(output)

        assert result.all_tasks_complete is True

    def test_checked_box_with_incomplete_phrase(self):
        output = "- [x] Export (not yet implemented for xml)\n" + CLEAN_BLOCK

        result = parse_verification_result(output)

        assert result.all_tasks_complete is False
        assert any(t.startswith("Incomplete work item:") for t in result.incomplete_tasks)

    def test_overall_status_incomplete(self):
        output = (
            "---VERIFICATION_RESULT---\n"
            "OVERALL_STATUS: INCOMPLETE\n"
            "SUMMARY: still going\n"
            "---END_VERIFICATION---"
        )

        result = parse_verification_result(output)

        assert result.all_tasks_complete is False
        assert result.incomplete_tasks == ["Verification indicated incomplete status"]
