# routers/comments.py — Task comment endpoints
from typing import List

from fastapi import APIRouter, Depends, status

from auth import get_current_user, CurrentUser
from dependencies import Services, get_services
from schemas import CommentBody, CommentOut

router = APIRouter(prefix="/api/v1", tags=["Comments"])


@router.post("/tasks/{task_id}/comments", response_model=CommentOut, status_code=status.HTTP_201_CREATED)
async def create_comment(
    task_id: str,
    body: CommentBody,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.comments.create_comment(task_id, body, user.id)


@router.get("/tasks/{task_id}/comments", response_model=List[CommentOut])
async def list_task_comments(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Newest first, each with its author"""
    rows = await services.comments.list_task_comments(task_id, user.id)
    return [CommentOut.build(comment, author) for comment, author in rows]


@router.patch("/comments/{comment_id}", response_model=CommentOut)
async def update_comment(
    comment_id: str,
    body: CommentBody,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.comments.update_comment(comment_id, body, user.id)


@router.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(
    comment_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.comments.delete_comment(comment_id, user.id)
