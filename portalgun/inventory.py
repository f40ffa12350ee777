"""ECS inventory client used to discover tasks and the hosts running them."""

from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import IncompleteDataError, TransportError
from .logging_config import get_logger, log_aws_operation, log_step
from .models import Container, ContainerInstance, NetworkBinding, Task

logger = get_logger(__name__)


class EcsInventory:
    """Client for querying ECS about running tasks and container instances."""

    def __init__(self, region: Optional[str] = None):
        self.region = region
        self._ecs: Optional[Any] = None

    def connect(self) -> None:
        """Create the boto3 ECS client from the ambient AWS configuration."""
        with log_step(logger, "connect_ecs", region=self.region) as result:
            try:
                session = boto3.session.Session(region_name=self.region)
                self._ecs = session.client("ecs")
            except BotoCoreError as e:
                logger.error("Failed to create ECS client", region=self.region, error=str(e))
                raise TransportError(f"could not create ECS client: {e}") from e
            result["region"] = self._ecs.meta.region_name

    @property
    def ecs(self) -> Any:
        if self._ecs is None:
            self.connect()
        return self._ecs

    def list_running_tasks(self, cluster: str, service_name: str) -> List[str]:
        """List the ARNs of running tasks belonging to a service.

        Args:
            cluster: ECS cluster name.
            service_name: Full ECS service name.

        Returns:
            Task ARNs in the order ECS returned them.
        """
        log_aws_operation(logger, "ListTasks", cluster, service_name=service_name)

        task_arns: List[str] = []
        try:
            paginator = self.ecs.get_paginator("list_tasks")
            for page in paginator.paginate(
                cluster=cluster,
                serviceName=service_name,
                desiredStatus="RUNNING",
            ):
                task_arns.extend(page.get("taskArns", []))
        except (BotoCoreError, ClientError) as e:
            logger.error("ListTasks failed", cluster=cluster, service_name=service_name, error=str(e))
            raise TransportError(f"could not list tasks for {service_name} in {cluster}: {e}") from e

        logger.debug("Listed running tasks", cluster=cluster, service_name=service_name, count=len(task_arns))
        return task_arns

    def describe_task(self, cluster: str, task_arn: str) -> List[Task]:
        """Describe a single task. Returns every record ECS sent back."""
        log_aws_operation(logger, "DescribeTasks", cluster, task_arn=task_arn)
        try:
            response = self.ecs.describe_tasks(cluster=cluster, tasks=[task_arn])
        except (BotoCoreError, ClientError) as e:
            logger.error("DescribeTasks failed", cluster=cluster, task_arn=task_arn, error=str(e))
            raise TransportError(f"could not describe task {task_arn}: {e}") from e

        _log_failures(response, cluster=cluster, task_arn=task_arn)
        return [_parse_task(raw) for raw in response.get("tasks", [])]

    def describe_host(self, cluster: str, container_instance_arn: str) -> List[ContainerInstance]:
        """Describe the container instance a task runs on."""
        log_aws_operation(logger, "DescribeContainerInstances", cluster,
                          container_instance_arn=container_instance_arn)
        try:
            response = self.ecs.describe_container_instances(
                cluster=cluster,
                containerInstances=[container_instance_arn],
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("DescribeContainerInstances failed",
                         cluster=cluster,
                         container_instance_arn=container_instance_arn,
                         error=str(e))
            raise TransportError(f"could not describe container instance {container_instance_arn}: {e}") from e

        _log_failures(response, cluster=cluster, container_instance_arn=container_instance_arn)
        return [
            ContainerInstance(
                container_instance_arn=raw.get("containerInstanceArn", container_instance_arn),
                ec2_instance_id=raw.get("ec2InstanceId"),
            )
            for raw in response.get("containerInstances", [])
        ]


def _log_failures(response: Dict[str, Any], **context: Any) -> None:
    for failure in response.get("failures", []):
        logger.warning("ECS reported a lookup failure",
                       arn=failure.get("arn"),
                       reason=failure.get("reason"),
                       detail=failure.get("detail"),
                       **context)


def _parse_task(raw: Dict[str, Any]) -> Task:
    task_arn = raw.get("taskArn")
    if not task_arn:
        raise IncompleteDataError("ECS returned a task without a task ARN")

    containers = []
    for raw_container in raw.get("containers", []):
        bindings = []
        for raw_binding in raw_container.get("networkBindings", []):
            if raw_binding.get("hostPort") is None or raw_binding.get("containerPort") is None:
                raise IncompleteDataError(
                    f"container {raw_container.get('name')} of task {task_arn} has a network binding without ports"
                )
            bindings.append(NetworkBinding(
                host_port=raw_binding["hostPort"],
                container_port=raw_binding["containerPort"],
            ))
        containers.append(Container(name=raw_container.get("name", ""), network_bindings=bindings))

    return Task(
        task_arn=task_arn,
        container_instance_arn=raw.get("containerInstanceArn"),
        containers=containers,
    )
