from __future__ import annotations

import dataclasses
import typing

import sessionhost
from sessionhost.errors import UnresolvedReference

if typing.TYPE_CHECKING:
    import sessionhost.graph
    import sessionhost.reconcile

SSM_CONNECT_COMMAND = "aws ssm start-session --target {instance_id} --region {region}"
S3_UPLOAD_COMMAND = "aws s3 cp ./myfile.txt s3://{bucket_name}/"


@dataclasses.dataclass(frozen=True)
class Outputs:
    instance_id: str
    instance_private_ip: str
    ssm_connect_command: str
    ssm_endpoint_id: str | None = None
    bucket_name: str | None = None
    s3_upload_command: str | None = None

    def as_dict(self) -> dict[str, str]:
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


def session_endpoint(graph: sessionhost.graph.EntityGraph) -> sessionhost.Endpoint | None:
    """The endpoint operators' sessions go through: the ssm interface endpoint, else the first interface one."""
    interfaces = [
        e for e in graph.of_kind(sessionhost.Endpoint) if e.endpoint_type == sessionhost.EndpointType.INTERFACE
    ]
    for endpoint in interfaces:
        if endpoint.service == "ssm":
            return endpoint
    return interfaces[0] if interfaces else None


def ready_output(
    records: typing.Mapping[str, sessionhost.reconcile.EntityRecord],
    entity: str,
    attribute: str,
) -> str:
    record = records.get(entity)
    if record is None or record.status != sessionhost.EntityStatus.READY:
        raise UnresolvedReference("outputs", attribute, entity, "is not ready")

    value = record.outputs.get(attribute, "")
    if value == "":
        raise UnresolvedReference("outputs", attribute, f"{entity}.{attribute}", "has no value")
    return value


def project(
    graph: sessionhost.graph.EntityGraph,
    records: typing.Mapping[str, sessionhost.reconcile.EntityRecord],
    region: str,
) -> Outputs:
    """
    Project runtime identifiers of created entities into the named operator outputs.

    Bindings for an undeclared session endpoint or store are omitted.

    :raises UnresolvedReference: if the instance, session endpoint or store has not reached Ready
    """
    instances = graph.of_kind(sessionhost.ComputeInstance)
    if not instances:
        raise UnresolvedReference("outputs", "instance_id", "compute_instance", "is not declared")
    instance = instances[0]

    instance_id = ready_output(records, instance.name, "id")
    outputs: dict[str, str | None] = {
        "instance_id": instance_id,
        "instance_private_ip": ready_output(records, instance.name, "private_ip"),
        "ssm_connect_command": SSM_CONNECT_COMMAND.format(instance_id=instance_id, region=region),
    }

    endpoint = session_endpoint(graph)
    if endpoint is not None:
        outputs["ssm_endpoint_id"] = ready_output(records, endpoint.name, "id")

    stores = graph.of_kind(sessionhost.ObjectStore)
    if stores:
        bucket_name = ready_output(records, stores[0].name, "name")
        outputs["bucket_name"] = bucket_name
        outputs["s3_upload_command"] = S3_UPLOAD_COMMAND.format(bucket_name=bucket_name)

    return Outputs(**outputs)  # type: ignore[arg-type]
