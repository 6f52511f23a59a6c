from fastapi import APIRouter

from . import conversations, dialogs, group_members, groups, messages

router = APIRouter()
router.include_router(conversations.router)
router.include_router(dialogs.router)
router.include_router(groups.router)
router.include_router(group_members.router)
router.include_router(messages.router)
