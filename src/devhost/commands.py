# commands.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from .errors import ConfirmationDeclinedError, DuplicateCommandError, UnknownResourceError
from .interaction import InteractionService, StaticInteractionService
from .logs import get_resource_logger
from .model import CommandAction, CommandResult, Resource, ResourceCommand
from .process import CancellationToken, ProcessRunner

log = logging.getLogger(__name__)


@dataclass
class CommandContext:
    """Everything a command action may use; passed explicitly to the action."""
    resource: Resource
    app: Any
    logger: logging.Logger
    token: CancellationToken
    interaction: InteractionService
    runner: ProcessRunner

    async def require_confirmation(
        self,
        message: str,
        title: str = "Confirm",
        cancelled_message: str = "cancelled by user",
    ) -> None:
        """Prompt the operator; raise ConfirmationDeclinedError unless accepted."""
        result = await self.interaction.prompt_confirmation(message, title, self.token)
        if not result.confirmed:
            raise ConfirmationDeclinedError(cancelled_message)


def add_command(
    resource: Resource,
    name: str,
    description: str,
    action: CommandAction,
    *,
    requires_confirmation: bool = False,
    confirmation_message: Optional[str] = None,
    confirmation_title: str = "Confirm",
    cancelled_message: str = "cancelled by user",
) -> ResourceCommand:
    if name in resource.commands:
        raise DuplicateCommandError(resource.name, name)
    cmd = ResourceCommand(
        name=name,
        description=description,
        action=action,
        requires_confirmation=requires_confirmation,
        confirmation_message=confirmation_message,
        confirmation_title=confirmation_title,
        cancelled_message=cancelled_message,
    )
    resource.commands[name] = cmd
    return cmd


class CommandService:
    """
    Registers and invokes operator commands.

    Invocation never raises for a misbehaving action: every outcome is a
    CommandResult. Commands ignore readiness; actions check it themselves
    if they care.
    """

    def __init__(
        self,
        app: Any,
        interaction: Optional[InteractionService] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        self.app = app
        self.interaction = interaction or StaticInteractionService(accept=False)
        self.runner = runner or ProcessRunner()

    def _resource(self, resource: Union[str, Resource]) -> Resource:
        name = resource if isinstance(resource, str) else resource.name
        try:
            return self.app.resources[name]
        except KeyError:
            raise UnknownResourceError(name, list(self.app.resources)) from None

    def register(
        self,
        resource: Union[str, Resource],
        name: str,
        description: str,
        action: CommandAction,
        *,
        requires_confirmation: bool = False,
        confirmation_message: Optional[str] = None,
        confirmation_title: str = "Confirm",
        cancelled_message: str = "cancelled by user",
    ) -> ResourceCommand:
        return add_command(
            self._resource(resource),
            name,
            description,
            action,
            requires_confirmation=requires_confirmation,
            confirmation_message=confirmation_message,
            confirmation_title=confirmation_title,
            cancelled_message=cancelled_message,
        )

    async def invoke(
        self,
        resource: Union[str, Resource],
        name: str,
        token: Optional[CancellationToken] = None,
    ) -> CommandResult:
        try:
            res = self._resource(resource)
        except UnknownResourceError as e:
            return CommandResult.failed(str(e))

        cmd = res.commands.get(name)
        if cmd is None:
            known = ", ".join(sorted(res.commands)) or "none"
            return CommandResult.failed(
                f"Resource '{res.name}' has no command '{name}' (available: {known})"
            )

        token = token or CancellationToken()
        logger = get_resource_logger(res.name)

        if cmd.requires_confirmation:
            message = cmd.confirmation_message or f"Run '{cmd.description}' on {res.name}?"
            answer = await self.interaction.prompt_confirmation(message, cmd.confirmation_title, token)
            if not answer.confirmed:
                logger.info("command '%s' not confirmed", name)
                return CommandResult.failed(cmd.cancelled_message)

        ctx = CommandContext(
            resource=res,
            app=self.app,
            logger=logger,
            token=token,
            interaction=self.interaction,
            runner=self.runner,
        )

        logger.info("running command '%s'", name)
        try:
            result = await cmd.action(ctx)
        except ConfirmationDeclinedError as e:
            return CommandResult.failed(str(e))
        except Exception as e:
            logger.error("command '%s' failed: %s", name, e)
            log.debug("command '%s' on '%s' raised", name, res.name, exc_info=True)
            return CommandResult.failed(str(e) or type(e).__name__)

        if result is None:
            return CommandResult.ok()
        return result
