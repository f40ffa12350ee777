"""Shared fixtures for portal-gun tests."""

from typing import Dict, List

import pytest

from portalgun.models import Container, ContainerInstance, Endpoint, NetworkBinding, Task


class FakeInventory:
    """In-memory inventory snapshot that records every lookup."""

    def __init__(self,
                 task_arns: Dict[str, List[str]],
                 tasks: Dict[str, List[Task]],
                 hosts: Dict[str, List[ContainerInstance]]):
        self.task_arns = task_arns
        self.tasks = tasks
        self.hosts = hosts
        self.calls = []

    def list_running_tasks(self, cluster, service_name):
        self.calls.append(("list_running_tasks", cluster, service_name))
        return list(self.task_arns.get(service_name, []))

    def describe_task(self, cluster, task_arn):
        self.calls.append(("describe_task", cluster, task_arn))
        return list(self.tasks.get(task_arn, []))

    def describe_host(self, cluster, container_instance_arn):
        self.calls.append(("describe_host", cluster, container_instance_arn))
        return list(self.hosts.get(container_instance_arn, []))


def make_task(arn, instance_arn, *containers):
    """Build a task from (name, [(host_port, container_port), ...]) pairs."""
    return Task(
        task_arn=arn,
        container_instance_arn=instance_arn,
        containers=[
            Container(
                name=name,
                network_bindings=[NetworkBinding(host_port=h, container_port=c) for h, c in bindings],
            )
            for name, bindings in containers
        ],
    )


@pytest.fixture
def staging_inventory():
    """The search-web service with a single task on i-1."""
    return FakeInventory(
        task_arns={"search-web": ["t1"]},
        tasks={"t1": [make_task("t1", "ci-1", ("web", [(51000, 8080)]))]},
        hosts={"ci-1": [ContainerInstance(container_instance_arn="ci-1", ec2_instance_id="i-1")]},
    )


@pytest.fixture
def endpoint():
    return Endpoint(task_arn="t1", ec2_instance_id="i-1", host_port=51000, container_port=8080)
