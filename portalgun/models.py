"""Data models for portal-gun endpoint resolution and tunnelling."""

import json
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NetworkBinding(BaseModel):
    """A host port bound to a container port."""

    model_config = ConfigDict(frozen=True)

    host_port: int = Field(..., description="Port exposed on the EC2 host")
    container_port: int = Field(..., description="Port the container listens on")


class Container(BaseModel):
    """A container running inside a task."""

    name: str = Field(..., description="Container name")
    network_bindings: List[NetworkBinding] = Field(default_factory=list, description="Bound ports")


class Task(BaseModel):
    """A running ECS task as returned by DescribeTasks."""

    task_arn: str = Field(..., description="Task ARN")
    container_instance_arn: Optional[str] = Field(None, description="Container instance hosting the task")
    containers: List[Container] = Field(default_factory=list, description="Containers in the task")


class ContainerInstance(BaseModel):
    """An ECS container instance as returned by DescribeContainerInstances."""

    container_instance_arn: str = Field(..., description="Container instance ARN")
    ec2_instance_id: Optional[str] = Field(None, description="EC2 instance backing the container instance")


class Endpoint(BaseModel):
    """A connectable task port: one per task and network binding."""

    model_config = ConfigDict(frozen=True)

    task_arn: str = Field(..., description="Task ARN")
    ec2_instance_id: str = Field(..., description="EC2 instance the task runs on")
    host_port: int = Field(..., description="Port exposed on the EC2 instance")
    container_port: int = Field(..., description="Port inside the container")

    @property
    def label(self) -> str:
        return (
            f"{{ Task: {self.task_arn}, EC2 Instance: {self.ec2_instance_id}, "
            f"Host Port: {self.host_port}, Container Port: {self.container_port} }}"
        )

    def __str__(self) -> str:
        return self.label


class ForwardingAgent(BaseModel):
    """How to invoke the SSM port forwarding agent."""

    executable: str = Field("aws", description="AWS CLI executable")
    document_name: str = Field("DeliverooSSMPortForward", description="SSM document performing the forward")
    region: Optional[str] = Field(None, description="AWS region passed to the CLI")

    def parameters(self, endpoint: Endpoint, local_port: int) -> str:
        """Serialize the SSM document parameters for a forward to endpoint."""
        params = {
            "portNumber": [str(endpoint.host_port)],
            "localPortNumber": [str(local_port)],
        }
        return json.dumps(params, separators=(",", ":"))

    def command(self, endpoint: Endpoint, local_port: int) -> List[str]:
        """Build the argv for a session forwarding local_port to endpoint."""
        command = [
            self.executable, "ssm", "start-session",
            "--target", endpoint.ec2_instance_id,
            "--document-name", self.document_name,
            "--parameters", self.parameters(endpoint, local_port),
        ]
        if self.region:
            command.extend(["--region", self.region])
        return command


class PortalConfig(BaseModel):
    """Configuration for one portal-gun run."""

    cluster: str = Field("staging", description="ECS cluster name")
    hopper_app: str = Field("consumer-search-service", description="Hopper app name")
    hopper_service: str = Field("web", description="Hopper service name")
    web_port: Optional[int] = Field(None, ge=1, le=65535, description="Port the web surface listens on")
    forward_port: Optional[int] = Field(None, ge=1, le=65535, description="Local port forwarded to the task")
    web_host: str = Field("127.0.0.1", description="Interface the web surface binds to")
    region: Optional[str] = Field(None, description="AWS region (defaults to the AWS environment)")
    document_name: str = Field("DeliverooSSMPortForward", description="SSM port forwarding document")
    aws_executable: str = Field("aws", description="AWS CLI executable")
    settle_seconds: float = Field(10.0, ge=0, description="Delay before the forwarded port is used")
    terminate_timeout: float = Field(5.0, gt=0, description="Grace period before the agent is killed")
    history_size: int = Field(200, ge=1, description="Tunnel events kept for the web surface")

    @property
    def service_identifier(self) -> str:
        return f"{self.hopper_app}-{self.hopper_service}"

    def forwarding_agent(self) -> ForwardingAgent:
        return ForwardingAgent(
            executable=self.aws_executable,
            document_name=self.document_name,
            region=self.region,
        )


class TunnelEvent(BaseModel):
    """One line of output from the forwarding agent."""

    channel: Literal["stdout", "stderr"] = Field(..., description="Output channel the line came from")
    line: str = Field(..., description="Line of text without its terminator")
    received_at: datetime = Field(default_factory=_now, description="When the line was read")

    def __str__(self) -> str:
        return self.line


class SessionStatus(BaseModel):
    """Snapshot of the portal for the web surface."""

    cluster: str = Field(..., description="ECS cluster name")
    service: str = Field(..., description="ECS service identifier")
    endpoint: Optional[Endpoint] = Field(None, description="Selected endpoint")
    forward_port: Optional[int] = Field(None, description="Local forwarded port")
    running: bool = Field(False, description="Whether the forwarding agent is running")
    stream_closed: bool = Field(False, description="Whether the event stream has ended")
    close_reason: Optional[str] = Field(None, description="Why the event stream ended")
    returncode: Optional[int] = Field(None, description="Agent exit code once it has exited")
    started_at: Optional[datetime] = Field(None, description="When the tunnel was opened")
    events_seen: int = Field(0, description="Number of tunnel events received")
