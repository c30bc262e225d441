"""
Access to the process-wide conversation controller.

The controller and its collaborators are built once at startup and kept on
``app.state``; routes receive it through ``Depends(get_controller)`` so tests
can swap it with ``app.dependency_overrides``.
"""
from fastapi import HTTPException, Request, status

from payout_bot.state_machine.controller import ConversationController


def get_controller(request: Request) -> ConversationController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Bot is starting up",
        )
    return controller
