"""Interactive selection of the endpoint to forward to."""

from typing import List, Protocol, Sequence, runtime_checkable

import click

from .errors import NotFoundError, SelectionAbortedError
from .logging_config import get_logger
from .models import Endpoint

logger = get_logger(__name__)


@runtime_checkable
class ChoicePrompt(Protocol):
    """Something that asks the user to pick one of several labelled items."""

    def prompt_choice(self, message: str, labels: List[str]) -> int:
        """Return the zero-based index of the chosen label.

        Raises:
            click.Abort: If the user cancels.
        """
        ...


class ClickChoicePrompt:
    """Numbered-list prompt on the terminal using click."""

    def prompt_choice(self, message: str, labels: List[str]) -> int:
        if not labels:
            raise ValueError("labels cannot be empty")

        click.echo()
        click.secho(message, fg="green", bold=True)
        click.echo()
        for i, label in enumerate(labels, 1):
            click.echo(f"  {click.style(str(i), fg='cyan')}. {label}")
        click.echo()

        try:
            choice = click.prompt(
                "Enter choice",
                type=click.IntRange(1, len(labels)),
                show_default=False,
            )
        except KeyboardInterrupt:
            click.echo()
            raise click.Abort()
        return choice - 1


class EndpointSelector:
    """Asks the user which endpoint of a catalog to forward to."""

    message = "Select the task to port forward to"

    def __init__(self, prompt: ChoicePrompt) -> None:
        self.prompt = prompt

    def choose(self, catalog: Sequence[Endpoint]) -> Endpoint:
        """Return the endpoint picked by the user.

        Raises:
            NotFoundError: The catalog is empty.
            SelectionAbortedError: The user cancelled, or the prompt returned
                an index outside the catalog.
        """
        if not catalog:
            raise NotFoundError("no endpoints to choose from: no task exposes a bound port")

        try:
            index = self.prompt.prompt_choice(self.message, [endpoint.label for endpoint in catalog])
        except (click.Abort, KeyboardInterrupt, EOFError) as e:
            logger.info("Endpoint selection cancelled")
            raise SelectionAbortedError("endpoint selection cancelled") from e

        if not 0 <= index < len(catalog):
            raise SelectionAbortedError(f"selection {index} is not one of the {len(catalog)} endpoints")

        endpoint = catalog[index]
        logger.info("Endpoint selected",
                    task_arn=endpoint.task_arn,
                    ec2_instance_id=endpoint.ec2_instance_id,
                    host_port=endpoint.host_port,
                    container_port=endpoint.container_port)
        return endpoint
