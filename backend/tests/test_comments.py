# tests/test_comments.py — Task comments: access, ownership, audit and events
import pytest
import pytest_asyncio

from errors import NotFound, PermissionDenied, ValidationFailure
from events import project_channel
from models import ActivityAction, ProjectRole, WorkspaceRole
from tests.conftest import activity_for, get_auth_headers


@pytest_asyncio.fixture
async def task(services, owner, project):
    return await services.tasks.create_task({"project_id": project.id, "title": "Discuss me"}, owner.id)


@pytest.mark.asyncio
async def test_add_comment_audits_and_publishes(services, owner, project, task, recorder):
    recorder.listen(project_channel(project.id))
    comment = await services.comments.create_comment(task.id, {"content": "  Looks good  "}, owner.id)

    assert comment.content == "Looks good"
    assert comment.author_id == owner.id

    rows = [r for r in await activity_for(services, task_id=task.id) if r.action == ActivityAction.COMMENT_ADDED]
    assert len(rows) == 1
    assert rows[0].details == {"comment_id": comment.id, "task_number": 1, "excerpt": "Looks good"}

    assert recorder.types() == ["comment.added"]
    assert recorder.events[0].payload["comment"]["task_id"] == task.id


@pytest.mark.asyncio
async def test_comment_requires_project_access(services, owner, teammate, outsider, workspace, task):
    with pytest.raises(PermissionDenied):
        await services.comments.create_comment(task.id, {"content": "Hi"}, outsider.id)
    with pytest.raises(PermissionDenied):
        await services.comments.list_task_comments(task.id, outsider.id)
    with pytest.raises(NotFound):
        await services.comments.create_comment("missing", {"content": "Hi"}, owner.id)

    # workspace viewers can see the project, so they can join the discussion
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.VIEWER, owner.id)
    comment = await services.comments.create_comment(task.id, {"content": "Question"}, teammate.id)
    assert comment.author_id == teammate.id


@pytest.mark.asyncio
async def test_comment_content_is_validated(services, owner, task):
    with pytest.raises(ValidationFailure):
        await services.comments.create_comment(task.id, {"content": "   "}, owner.id)
    with pytest.raises(ValidationFailure):
        await services.comments.create_comment(task.id, {"content": "x" * 2001}, owner.id)
    with pytest.raises(ValidationFailure):
        await services.comments.create_comment(task.id, {"content": "ok", "author_id": "someone"}, owner.id)


@pytest.mark.asyncio
async def test_list_newest_first_with_authors(services, owner, teammate, workspace, task):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    first = await services.comments.create_comment(task.id, {"content": "First"}, owner.id)
    second = await services.comments.create_comment(task.id, {"content": "Second"}, teammate.id)

    rows = await services.comments.list_task_comments(task.id, owner.id)
    assert [(c.id, u.id) for c, u in rows] == [(second.id, teammate.id), (first.id, owner.id)]


@pytest.mark.asyncio
async def test_only_author_edits(services, owner, teammate, workspace, project, task, recorder):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    comment = await services.comments.create_comment(task.id, {"content": "Draft"}, teammate.id)
    recorder.listen(project_channel(project.id))

    # not even the workspace owner may rewrite someone else's words
    with pytest.raises(PermissionDenied):
        await services.comments.update_comment(comment.id, {"content": "Edited"}, owner.id)

    unchanged = await services.comments.update_comment(comment.id, {"content": "Draft"}, teammate.id)
    assert unchanged.content == "Draft"
    assert recorder.events == []

    edited = await services.comments.update_comment(comment.id, {"content": "Final"}, teammate.id)
    assert edited.content == "Final"
    assert recorder.types() == ["comment.updated"]

    rows = [r for r in await activity_for(services, task_id=task.id) if r.action == ActivityAction.COMMENT_UPDATED]
    assert [r.details["excerpt"] for r in rows] == ["Final"]

    with pytest.raises(NotFound):
        await services.comments.update_comment("missing", {"content": "x"}, teammate.id)


@pytest.mark.asyncio
async def test_delete_by_author_or_task_manager(services, owner, teammate, outsider, workspace, project, task, recorder):
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.MEMBER, owner.id)
    await services.workspaces.add_member(workspace.id, outsider.id, WorkspaceRole.VIEWER, owner.id)
    mine = await services.comments.create_comment(task.id, {"content": "Mine"}, teammate.id)
    theirs = await services.comments.create_comment(task.id, {"content": "Theirs"}, outsider.id)
    recorder.listen(project_channel(project.id))

    # a plain workspace member cannot manage tasks, so cannot remove other people's comments
    with pytest.raises(PermissionDenied):
        await services.comments.delete_comment(theirs.id, teammate.id)

    await services.comments.delete_comment(mine.id, teammate.id)
    await services.projects.add_member(project.id, teammate.id, ProjectRole.DEVELOPER, owner.id)
    await services.comments.delete_comment(theirs.id, teammate.id)

    assert await services.comments.list_task_comments(task.id, owner.id) == []
    assert recorder.types() == ["comment.deleted", "comment.deleted"]
    assert recorder.events[0].payload == {"comment_id": mine.id, "task_id": task.id}

    rows = [r for r in await activity_for(services, task_id=task.id) if r.action == ActivityAction.COMMENT_DELETED]
    assert [r.details["comment_id"] for r in rows] == [mine.id, theirs.id]


@pytest.mark.asyncio
async def test_comments_go_with_their_task(services, owner, project, task):
    await services.comments.create_comment(task.id, {"content": "Bye"}, owner.id)
    await services.tasks.delete_task(task.id, owner.id)

    with pytest.raises(NotFound):
        await services.comments.list_task_comments(task.id, owner.id)

    other = await services.tasks.create_task({"project_id": project.id, "title": "Also"}, owner.id)
    await services.comments.create_comment(other.id, {"content": "Still here"}, owner.id)
    await services.projects.delete_project(project.id, owner.id)


@pytest.mark.asyncio
async def test_comment_endpoints(client, owner, task):
    headers = get_auth_headers(owner)

    response = await client.post(f"/api/v1/tasks/{task.id}/comments", json={"content": "Via HTTP"}, headers=headers)
    assert response.status_code == 201
    comment_id = response.json()["id"]

    response = await client.get(f"/api/v1/tasks/{task.id}/comments", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert [c["id"] for c in body] == [comment_id]
    assert body[0]["author"]["id"] == owner.id

    response = await client.patch(f"/api/v1/comments/{comment_id}", json={"content": "Edited"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["content"] == "Edited"

    response = await client.post(f"/api/v1/tasks/{task.id}/comments", json={"content": ""}, headers=headers)
    assert response.status_code == 422

    response = await client.delete(f"/api/v1/comments/{comment_id}", headers=headers)
    assert response.status_code == 204
    response = await client.delete(f"/api/v1/comments/{comment_id}", headers=headers)
    assert response.status_code == 404
