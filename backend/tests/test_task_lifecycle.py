# tests/test_task_lifecycle.py — Task state machine, numbering, bulk updates and events
import asyncio

import pytest

from errors import InvariantViolation, NotFound, PermissionDenied, ValidationFailure
from events import project_channel, user_channel
from models import ActivityAction, ProjectRole, TaskStatus, WorkspaceRole, as_utc
from tests.conftest import activity_for


async def _new_task(services, project, actor, **fields):
    data = {"project_id": project.id, "title": fields.pop("title", "Task")}
    data.update(fields)
    return await services.tasks.create_task(data, actor.id)


# ============================================================
# CREATE & NUMBERING
# ============================================================

@pytest.mark.asyncio
async def test_create_task_numbers_and_audits(services, owner, project, recorder):
    recorder.listen(project_channel(project.id))
    first = await _new_task(services, project, owner, title="Set up CI")
    second = await _new_task(services, project, owner, title="Write docs")

    assert (first.task_number, second.task_number) == (1, 2)
    assert first.reporter_id == owner.id
    assert first.status == TaskStatus.TODO
    assert first.completed_at is None

    rows = await activity_for(services, project_id=project.id)
    created = [r for r in rows if r.action == ActivityAction.TASK_CREATED]
    assert [r.details["task_number"] for r in created] == [1, 2]
    assert recorder.types() == ["task.created", "task.created"]
    assert recorder.events[0].payload["task"]["title"] == "Set up CI"
    assert recorder.events[0].actor_id == owner.id


@pytest.mark.asyncio
async def test_deleted_numbers_are_never_reused(services, owner, project):
    await _new_task(services, project, owner)
    await _new_task(services, project, owner)
    third = await _new_task(services, project, owner)
    await services.tasks.delete_task(third.id, owner.id)

    fourth = await _new_task(services, project, owner)
    assert fourth.task_number == 4


@pytest.mark.asyncio
async def test_concurrent_creates_get_distinct_numbers(services, owner, project):
    tasks = await asyncio.gather(*[
        _new_task(services, project, owner, title=f"Task {i}") for i in range(50)
    ])
    assert sorted(t.task_number for t in tasks) == list(range(1, 51))


@pytest.mark.asyncio
async def test_create_requires_create_permission(services, owner, teammate, workspace, project):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    with pytest.raises(PermissionDenied):
        await _new_task(services, project, teammate)

    await services.projects.add_member(project.id, teammate.id, ProjectRole.DEVELOPER, owner.id)
    task = await _new_task(services, project, teammate)
    assert task.reporter_id == teammate.id


@pytest.mark.asyncio
async def test_create_in_missing_project(services, owner):
    with pytest.raises(NotFound):
        await services.tasks.create_task({"project_id": "nope", "title": "x"}, owner.id)


@pytest.mark.asyncio
async def test_create_done_sets_completed_at(services, owner, project):
    task = await _new_task(services, project, owner, status="done")
    assert task.completed_at is not None


@pytest.mark.asyncio
async def test_parent_must_be_in_same_project(services, owner, workspace, project):
    other = await services.projects.create_project(
        {"workspace_id": workspace.id, "name": "Other", "key": "OTH"}, owner.id,
    )
    foreign = await _new_task(services, other, owner)
    with pytest.raises(ValidationFailure):
        await _new_task(services, project, owner, parent_task_id=foreign.id)

    parent = await _new_task(services, project, owner)
    child = await _new_task(services, project, owner, parent_task_id=parent.id)
    assert child.parent_task_id == parent.id


@pytest.mark.asyncio
async def test_invalid_input_is_validation_failure(services, owner, project):
    with pytest.raises(ValidationFailure):
        await services.tasks.create_task({"project_id": project.id, "title": ""}, owner.id)
    with pytest.raises(ValidationFailure):
        await services.tasks.create_task({"project_id": project.id, "title": "x", "status": "shipped"}, owner.id)


# ============================================================
# UPDATE
# ============================================================

@pytest.mark.asyncio
async def test_empty_patch_changes_nothing(services, owner, project, recorder):
    task = await _new_task(services, project, owner)
    before_rows = [r.id for r in await activity_for(services, task_id=task.id)]
    recorder.listen(project_channel(project.id))

    same = await services.tasks.update_task(task.id, {}, owner.id)
    noop = await services.tasks.update_task(task.id, {"title": task.title, "status": "todo"}, owner.id)

    assert as_utc(same.updated_at) == as_utc(task.updated_at)
    assert as_utc(noop.updated_at) == as_utc(task.updated_at)
    assert [r.id for r in await activity_for(services, task_id=task.id)] == before_rows
    assert recorder.events == []


@pytest.mark.asyncio
async def test_unchanged_due_date_is_a_noop(services, owner, project, recorder):
    task = await _new_task(services, project, owner, due_date="2030-01-01T00:00:00Z")
    recorder.listen(project_channel(project.id))

    same = await services.tasks.update_task(task.id, {"due_date": "2030-01-01T00:00:00Z"}, owner.id)
    assert as_utc(same.updated_at) == as_utc(task.updated_at)
    assert recorder.events == []

    moved = await services.tasks.update_task(task.id, {"due_date": "2030-02-01T00:00:00Z"}, owner.id)
    assert as_utc(moved.due_date).month == 2
    assert recorder.of_type("task.updated")[0].payload["changed_fields"] == ["due_date"]


@pytest.mark.asyncio
async def test_done_sets_and_clears_completed_at(services, owner, project):
    task = await _new_task(services, project, owner)

    done = await services.tasks.update_task(task.id, {"status": "done"}, owner.id)
    assert done.completed_at is not None

    reopened = await services.tasks.update_task(task.id, {"status": "todo"}, owner.id)
    assert reopened.completed_at is None

    rows = await activity_for(services, task_id=task.id)
    changes = [(r.details["from"], r.details["to"]) for r in rows if r.action == ActivityAction.TASK_STATUS_CHANGED]
    assert changes == [("todo", "done"), ("done", "todo")]


@pytest.mark.asyncio
async def test_status_change_between_other_states_keeps_completed_at_empty(services, owner, project):
    task = await _new_task(services, project, owner)
    for status in ("in_progress", "blocked", "in_review"):
        task = await services.tasks.update_task(task.id, {"status": status}, owner.id)
        assert task.completed_at is None


@pytest.mark.asyncio
async def test_multi_field_patch_audits_each_field_in_order(services, owner, teammate, workspace, project, recorder):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    task = await _new_task(services, project, owner)
    recorder.listen(project_channel(project.id), user_channel(teammate.id))

    await services.tasks.update_task(
        task.id,
        {"priority": "urgent", "assignee_id": teammate.id, "status": "in_progress", "title": "Renamed"},
        owner.id,
    )

    rows = [r for r in await activity_for(services, task_id=task.id) if r.action != ActivityAction.TASK_CREATED]
    assert [r.action for r in rows] == [
        ActivityAction.TASK_STATUS_CHANGED,
        ActivityAction.TASK_ASSIGNEE_CHANGED,
        ActivityAction.TASK_PRIORITY_CHANGED,
    ]
    assert [r.sequence for r in rows] == sorted(r.sequence for r in rows)
    assert rows[1].details == {"task_number": 1, "from": None, "to": teammate.id}
    assert rows[2].details["from"] == "medium" and rows[2].details["to"] == "urgent"

    updated = recorder.of_type("task.updated")
    assert len(updated) == 1
    assert set(updated[0].payload["changed_fields"]) == {"priority", "assignee_id", "status", "title"}
    assigned = recorder.of_type("task.assigned")
    assert len(assigned) == 1
    assert assigned[0].channel == user_channel(teammate.id)
    assert assigned[0].payload["assigned_by"] == owner.id


@pytest.mark.asyncio
async def test_read_only_fields_are_rejected(services, owner, project):
    task = await _new_task(services, project, owner)
    for field, value in (
        ("completed_at", "2024-01-01T00:00:00Z"),
        ("task_number", 99),
        ("project_id", "elsewhere"),
        ("reporter_id", owner.id),
    ):
        with pytest.raises(ValidationFailure):
            await services.tasks.update_task(task.id, {field: value}, owner.id)


@pytest.mark.asyncio
async def test_update_permissions(services, owner, teammate, outsider, workspace, project):
    task = await _new_task(services, project, owner)
    with pytest.raises(NotFound):
        await services.tasks.update_task("missing", {"status": "done"}, owner.id)
    with pytest.raises(PermissionDenied):
        await services.tasks.update_task(task.id, {"status": "done"}, outsider.id)

    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.VIEWER, owner.id)
    with pytest.raises(PermissionDenied):
        await services.tasks.update_task(task.id, {"status": "done"}, teammate.id)


@pytest.mark.asyncio
async def test_assignee_must_see_the_project(services, owner, outsider, project, recorder):
    task = await _new_task(services, project, owner)
    recorder.listen(project_channel(project.id), user_channel(outsider.id))
    with pytest.raises(ValidationFailure):
        await services.tasks.update_task(task.id, {"assignee_id": outsider.id, "status": "done"}, owner.id)

    # the failed transaction left no trace
    reloaded = await services.tasks.get_task(task.id, owner.id)
    assert reloaded.task.status == TaskStatus.TODO
    assert recorder.events == []
    assert [r.action for r in await activity_for(services, task_id=task.id)] == [ActivityAction.TASK_CREATED]


@pytest.mark.asyncio
async def test_parent_cycle_rejected(services, owner, project):
    parent = await _new_task(services, project, owner)
    child = await _new_task(services, project, owner, parent_task_id=parent.id)
    with pytest.raises(ValidationFailure):
        await services.tasks.update_task(parent.id, {"parent_task_id": child.id}, owner.id)
    with pytest.raises(ValidationFailure):
        await services.tasks.update_task(parent.id, {"parent_task_id": parent.id}, owner.id)


@pytest.mark.asyncio
async def test_assign_and_unassign(services, owner, teammate, workspace, project, recorder):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    task = await _new_task(services, project, owner)
    recorder.listen(user_channel(teammate.id))

    assigned = await services.tasks.assign_task(task.id, teammate.id, owner.id)
    assert assigned.assignee_id == teammate.id
    again = await services.tasks.assign_task(task.id, teammate.id, owner.id)
    assert as_utc(again.updated_at) == as_utc(assigned.updated_at)

    cleared = await services.tasks.assign_task(task.id, None, owner.id)
    assert cleared.assignee_id is None
    assert len(recorder.of_type("task.assigned")) == 1

    mine = await services.tasks.list_user_tasks(teammate.id)
    assert mine == []


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_commit(services, owner, project, recorder):
    async def broken(event):
        raise RuntimeError("subscriber down")

    services.fanout.subscribe(project_channel(project.id), broken)
    recorder.listen(project_channel(project.id))

    task = await _new_task(services, project, owner)
    assert task.task_number == 1
    assert recorder.types() == ["task.created"]
    assert len(await services.tasks.list_project_tasks(project.id, owner.id)) == 1


# ============================================================
# BULK
# ============================================================

@pytest.mark.asyncio
async def test_bulk_update_skips_forbidden_and_missing(services, owner, teammate, workspace, project, recorder):
    other = await services.projects.create_project(
        {"workspace_id": workspace.id, "name": "Other", "key": "OTH"}, owner.id,
    )
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    await services.projects.add_member(project.id, teammate.id, ProjectRole.DEVELOPER, owner.id)

    first = await _new_task(services, project, owner)
    forbidden = await _new_task(services, other, owner)
    third = await _new_task(services, project, owner)
    recorder.listen(project_channel(project.id), project_channel(other.id))

    result = await services.tasks.bulk_update_status(
        [
            {"task_id": first.id, "status": "done"},
            {"task_id": forbidden.id, "status": "done"},
            {"task_id": third.id, "status": "in_progress"},
            {"task_id": "missing", "status": "done"},
        ],
        teammate.id,
    )

    assert [t.id for t in result] == [first.id, third.id]
    assert result[0].completed_at is not None
    untouched = await services.tasks.get_task(forbidden.id, owner.id)
    assert untouched.task.status == TaskStatus.TODO

    bulk = recorder.of_type("tasks.bulk_updated")
    assert len(bulk) == 1
    assert bulk[0].channel == project_channel(project.id)
    assert [t["id"] for t in bulk[0].payload["tasks"]] == [first.id, third.id]

    rows = await activity_for(services, project_id=project.id, actor_id=teammate.id)
    assert [r.action for r in rows] == [ActivityAction.TASK_STATUS_CHANGED] * 2


@pytest.mark.asyncio
async def test_bulk_update_with_nothing_allowed(services, outsider, owner, project, recorder):
    task = await _new_task(services, project, owner)
    recorder.listen(project_channel(project.id))
    result = await services.tasks.bulk_update_status([{"task_id": task.id, "status": "done"}], outsider.id)
    assert result == []
    assert recorder.events == []


# ============================================================
# DELETE & READS
# ============================================================

@pytest.mark.asyncio
async def test_delete_rules(services, owner, teammate, workspace, project, recorder):
    parent = await _new_task(services, project, owner)
    child = await _new_task(services, project, owner, parent_task_id=parent.id)

    with pytest.raises(InvariantViolation):
        await services.tasks.delete_task(parent.id, owner.id)

    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    await services.projects.add_member(project.id, teammate.id, ProjectRole.DEVELOPER, owner.id)
    with pytest.raises(PermissionDenied):
        await services.tasks.delete_task(child.id, teammate.id)

    recorder.listen(project_channel(project.id))
    await services.tasks.delete_task(child.id, owner.id)
    await services.tasks.delete_task(parent.id, owner.id)
    assert recorder.of_type("task.deleted")[0].payload == {"task_id": child.id}

    with pytest.raises(NotFound):
        await services.tasks.get_task(child.id, owner.id)
    deleted = [r for r in await activity_for(services, project_id=project.id) if r.action == ActivityAction.TASK_DELETED]
    assert [r.task_id for r in deleted] == [child.id, parent.id]


@pytest.mark.asyncio
async def test_get_task_with_relations(services, owner, teammate, workspace, project):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    parent = await _new_task(services, project, owner, title="Epic")
    child = await _new_task(services, project, owner, title="Story", parent_task_id=parent.id, assignee_id=teammate.id)

    detail = await services.tasks.get_task(parent.id, owner.id)
    assert detail.project.key == "ENG"
    assert [t.id for t in detail.subtasks] == [child.id]
    assert detail.reporter.id == owner.id
    assert detail.assignee is None

    detail = await services.tasks.get_task(child.id, teammate.id)
    assert detail.parent.id == parent.id
    assert detail.assignee.email == teammate.email


@pytest.mark.asyncio
async def test_list_filters(services, owner, teammate, outsider, workspace, project):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    await _new_task(services, project, owner, priority="high")
    await _new_task(services, project, owner, assignee_id=teammate.id, status="in_progress")

    assert len(await services.tasks.list_project_tasks(project.id, teammate.id)) == 2
    assert len(await services.tasks.list_project_tasks(project.id, owner.id, priority="high")) == 1
    assert len(await services.tasks.list_project_tasks(project.id, owner.id, status="in_progress")) == 1
    with pytest.raises(ValidationFailure):
        await services.tasks.list_project_tasks(project.id, owner.id, status="shipped")
    with pytest.raises(PermissionDenied):
        await services.tasks.list_project_tasks(project.id, outsider.id)

    mine = await services.tasks.list_user_tasks(teammate.id)
    assert [t.task_number for t in mine] == [2]
