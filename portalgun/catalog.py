"""Build the catalog of connectable endpoints for an ECS service."""

from functools import reduce
from typing import List, Protocol

from .errors import ConsistencyError, IncompleteDataError, NotFoundError
from .logging_config import get_logger, log_step
from .models import ContainerInstance, Endpoint, Task

logger = get_logger(__name__)


class Inventory(Protocol):
    """What the catalog builder needs from the cluster inventory."""

    def list_running_tasks(self, cluster: str, service_name: str) -> List[str]:
        ...

    def describe_task(self, cluster: str, task_arn: str) -> List[Task]:
        ...

    def describe_host(self, cluster: str, container_instance_arn: str) -> List[ContainerInstance]:
        ...


def service_identifier(app_name: str, service_name: str) -> str:
    """Compose the ECS service name of a hopper app and service."""
    return f"{app_name}-{service_name}"


class CatalogBuilder:
    """Joins the running tasks of a service with their hosts and bound ports.

    Every lookup is sequential and any failure aborts the whole build; a
    partial catalog is never returned.
    """

    def __init__(self, inventory: Inventory) -> None:
        self.inventory = inventory

    def build(self, cluster: str, app_name: str, service_name: str) -> List[Endpoint]:
        """Build the ordered endpoint catalog for a service.

        Args:
            cluster: ECS cluster name.
            app_name: Hopper app name.
            service_name: Hopper service name.

        Returns:
            Endpoints ordered by task, then container, then binding. Empty
            when no task has a bound port.

        Raises:
            NotFoundError: No running task matches the service.
            ConsistencyError: A task or host lookup returned 0 or several records.
            IncompleteDataError: A task has no host reference or a host has no EC2 id.
        """
        service = service_identifier(app_name, service_name)
        with log_step(logger, "build_catalog", cluster=cluster, service=service) as result:
            task_arns = self.inventory.list_running_tasks(cluster, service)
            if not task_arns:
                raise NotFoundError(f"could not find any tasks in cluster {cluster} with service name {service}")

            tasks = [self._describe_task(cluster, arn) for arn in task_arns]
            endpoints = reduce(
                lambda catalog, task: catalog + self._endpoints_for_task(cluster, task),
                tasks,
                [],
            )
            result["endpoints"] = len(endpoints)

        logger.info("Endpoint catalog built",
                    cluster=cluster,
                    service=service,
                    tasks=len(tasks),
                    endpoints=len(endpoints))
        return endpoints

    def _describe_task(self, cluster: str, task_arn: str) -> Task:
        records = self.inventory.describe_task(cluster, task_arn)
        if not records:
            raise ConsistencyError(f"found 0 tasks with arn: {task_arn}")
        if len(records) > 1:
            raise ConsistencyError(f"found multiple tasks with arn: {task_arn}")
        return records[0]

    def _resolve_host(self, cluster: str, task: Task) -> str:
        if not task.container_instance_arn:
            raise IncompleteDataError(f"task {task.task_arn} is not placed on a container instance")

        records = self.inventory.describe_host(cluster, task.container_instance_arn)
        if not records:
            raise ConsistencyError(f"found 0 container instances for task: {task.task_arn}")
        if len(records) > 1:
            raise ConsistencyError(f"found multiple container instances for task: {task.task_arn}")

        instance = records[0]
        if not instance.ec2_instance_id:
            raise IncompleteDataError(
                f"container instance {instance.container_instance_arn} had no EC2 instance ID"
            )
        return instance.ec2_instance_id

    def _endpoints_for_task(self, cluster: str, task: Task) -> List[Endpoint]:
        ec2_instance_id = self._resolve_host(cluster, task)
        logger.debug("Resolved task host", task_arn=task.task_arn, ec2_instance_id=ec2_instance_id)
        return [
            Endpoint(
                task_arn=task.task_arn,
                ec2_instance_id=ec2_instance_id,
                host_port=binding.host_port,
                container_port=binding.container_port,
            )
            for container in task.containers
            for binding in container.network_bindings
        ]


def build_catalog(inventory: Inventory, cluster: str, app_name: str, service_name: str) -> List[Endpoint]:
    """Build the endpoint catalog of a service with the given inventory."""
    return CatalogBuilder(inventory).build(cluster, app_name, service_name)
