from __future__ import annotations

from pathlib import Path

import allure
import pytest

from work_loop.errors import MalformedPlanError, PlanIOError
from work_loop.plan import TaskStatus, count_by_status, is_settled, parse_plan, read_plan
from work_loop.plan.parser import select_next_task

pytestmark = [
    allure.epic("Plan Store"),
    allure.feature("Checklist Parsing"),
]


def test_parse_plan_reads_every_marker_in_document_order() -> None:
    tasks = parse_plan(
        "# Plan\n"
        "\n"
        "- [ ] Write parser\n"
        "Some prose that is not a task.\n"
        "  - [x] Nested done task\n"
        "- [X] Upper-case done\n"
        "- [~] Half way\n"
        "- [!] Stuck\n",
    )

    assert [task.index for task in tasks] == [0, 1, 2, 3, 4]
    assert [task.text for task in tasks] == [
        "Write parser",
        "Nested done task",
        "Upper-case done",
        "Half way",
        "Stuck",
    ]
    assert [task.status for task in tasks] == [
        TaskStatus.OPEN,
        TaskStatus.DONE,
        TaskStatus.DONE,
        TaskStatus.IN_PROGRESS,
        TaskStatus.BLOCKED,
    ]
    assert [task.line_number for task in tasks] == [2, 4, 5, 6, 7]


def test_parse_plan_ignores_lines_that_are_not_tasks() -> None:
    tasks = parse_plan(
        "- [?] unknown marker\n"
        "* [ ] star bullet\n"
        "- [] missing marker\n"
        "- [ ]no space before text\n"
        "1. [ ] numbered\n",
    )

    assert tasks == []


def test_parse_plan_trims_task_text_and_allows_loose_dash_spacing() -> None:
    tasks = parse_plan("-[ ] tight dash\n\t-   [~]   padded text   \n")

    assert [task.text for task in tasks] == ["tight dash", "padded text"]
    assert tasks[1].status is TaskStatus.IN_PROGRESS


def test_parse_plan_handles_crlf_line_endings() -> None:
    tasks = parse_plan("- [ ] first\r\n- [x] second\r\n")

    assert [task.text for task in tasks] == ["first", "second"]
    assert [task.status for task in tasks] == [TaskStatus.OPEN, TaskStatus.DONE]


def test_parse_plan_empty_text_has_no_tasks() -> None:
    assert parse_plan("") == []
    assert parse_plan("# Only a heading\n\nprose\n") == []


def test_is_settled_and_counts() -> None:
    settled = parse_plan("- [x] a\n- [!] b\n")
    unsettled = parse_plan("- [x] a\n- [~] b\n")

    assert is_settled(settled)
    assert not is_settled(unsettled)
    assert is_settled([])
    assert count_by_status(unsettled) == {
        TaskStatus.OPEN: 0,
        TaskStatus.IN_PROGRESS: 1,
        TaskStatus.DONE: 1,
        TaskStatus.BLOCKED: 0,
    }


def test_select_next_task_prefers_open_then_in_progress() -> None:
    tasks = parse_plan("- [x] a\n- [~] b\n- [ ] c\n- [ ] d\n")

    assert select_next_task(tasks).text == "c"
    assert select_next_task(tasks, resume_first=True).text == "b"


def test_select_next_task_falls_back_and_returns_none_when_settled() -> None:
    only_in_progress = parse_plan("- [x] a\n- [~] b\n- [~] c\n")
    only_open = parse_plan("- [ ] a\n")

    assert select_next_task(only_in_progress).text == "b"
    assert select_next_task(only_open, resume_first=True).text == "a"
    assert select_next_task(parse_plan("- [x] a\n- [!] b\n")) is None


def test_task_status_markers_round_trip() -> None:
    for status in TaskStatus:
        assert TaskStatus.from_marker(status.marker) is status
    assert TaskStatus.from_marker("X") is TaskStatus.DONE
    with pytest.raises(ValueError, match="Unknown checklist marker"):
        TaskStatus.from_marker("?")


def test_read_plan_preserves_raw_line_endings(write_plan) -> None:
    path = write_plan("- [ ] a\r\n- [ ] b\n")

    assert read_plan(path) == "- [ ] a\r\n- [ ] b\n"


def test_read_plan_missing_file_raises_plan_io_error(tmp_path: Path) -> None:
    missing = tmp_path / "missing.md"

    with pytest.raises(PlanIOError) as error_info:
        read_plan(missing)

    assert error_info.value.code == "plan_io"
    assert error_info.value.path == missing


def test_read_plan_rejects_invalid_utf8(tmp_path: Path) -> None:
    path = tmp_path / "PLAN.md"
    path.write_bytes(b"- [ ] caf\xe9\n")

    with pytest.raises(MalformedPlanError, match="not valid UTF-8"):
        read_plan(path)
