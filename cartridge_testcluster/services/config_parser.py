import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

import yaml

from cartridge_testcluster.exceptions import ConfigError, ConfigErrorKind
from cartridge_testcluster.models.cluster import InstanceSpec, TopologyNode

logger = logging.getLogger(__name__)

ROUTER_PREFIX = "router"


def _require_mapping(value: Any, what: str, entry_id: Optional[str] = None) -> Mapping:
    if not isinstance(value, Mapping):
        raise ConfigError(
            ConfigErrorKind.MISSING_FIELD,
            f"{what} must be a mapping, got {type(value).__name__}",
            entry_id
        )
    return value


def _parse_port(value: Any, what: str, entry_id: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(ConfigErrorKind.MALFORMED_ENDPOINT, f"{what} is not a port: {value!r}", entry_id)
    try:
        port = int(str(value).strip())
    except ValueError:
        raise ConfigError(
            ConfigErrorKind.MALFORMED_ENDPOINT,
            f"{what} is not a port: {value!r}",
            entry_id
        ) from None
    if not 1 <= port <= 65535:
        raise ConfigError(ConfigErrorKind.MALFORMED_ENDPOINT, f"{what} is out of range: {port}", entry_id)
    return port


def is_router_instance(instance_id: str) -> bool:
    """Router instances are recognized by a case-insensitive id prefix"""
    return instance_id.lower().startswith(ROUTER_PREFIX)


def short_instance_name(instance_id: str) -> str:
    return instance_id.split(".", 1)[-1]


def load_document(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML document; an empty file is an empty mapping"""
    with open(path, "r", encoding="utf-8") as stream:
        document = yaml.safe_load(stream)
    if document is None:
        return {}
    return dict(_require_mapping(document, f"Document {path}"))


def parse_instance(instance_id: str, entry: Mapping) -> InstanceSpec:
    """
    Parse one entry of the instance document

    Args:
        instance_id: Key of the entry
        entry: Mapping with workdir, advertise_uri and http_port

    Returns:
        InstanceSpec: The parsed instance
    """
    entry = _require_mapping(entry, "Instance entry", instance_id)

    advertise_host = None
    advertise_port = None
    advertise_uri = entry.get("advertise_uri")
    if advertise_uri is not None:
        if not isinstance(advertise_uri, str) or not advertise_uri.strip():
            raise ConfigError(
                ConfigErrorKind.MALFORMED_ENDPOINT,
                f"advertise_uri must be a 'host:port' string, got {advertise_uri!r}",
                instance_id
            )
        host, _, port_token = advertise_uri.strip().rpartition(":")
        advertise_host = host or None
        advertise_port = _parse_port(port_token, "advertise_uri port", instance_id)

    http_port = entry.get("http_port")
    if http_port is not None:
        http_port = _parse_port(http_port, "http_port", instance_id)

    return InstanceSpec(
        instance_id=instance_id,
        workdir=entry.get("workdir"),
        advertise_host=advertise_host,
        advertise_port=advertise_port,
        http_port=http_port
    )


def parse_instances(document: Mapping) -> Dict[str, InstanceSpec]:
    """Parse the instance document into instance specs keyed by id"""
    document = _require_mapping(document, "Instance document")
    instances = {
        str(instance_id): parse_instance(str(instance_id), entry)
        for instance_id, entry in document.items()
    }
    logger.debug(f"Parsed {len(instances)} instances")
    return instances


def exposed_ports(instances: Mapping[str, InstanceSpec]) -> FrozenSet[int]:
    """Union of the HTTP and advertised binary ports of all instances"""
    ports = set()
    for instance in instances.values():
        if instance.http_port is not None:
            ports.add(instance.http_port)
        if instance.advertise_port is not None:
            ports.add(instance.advertise_port)
    return frozenset(ports)


def _require_string_list(entry: Mapping, field: str, replicaset_id: str) -> List[str]:
    values = entry.get(field)
    if not values:
        raise ConfigError(ConfigErrorKind.MISSING_FIELD, f"'{field}' must be a non-empty list", replicaset_id)
    if isinstance(values, str) or not isinstance(values, (list, tuple)):
        raise ConfigError(ConfigErrorKind.MISSING_FIELD, f"'{field}' must be a list", replicaset_id)
    return [str(value) for value in values]


def parse_replicaset(replicaset_id: str, entry: Mapping) -> TopologyNode:
    """
    Parse one replica set of the topology document

    weight and vshard_group are required unless one of the members is a
    router, in which case they are ignored.
    """
    entry = _require_mapping(entry, "Replica set entry", replicaset_id)

    members = _require_string_list(entry, "instances", replicaset_id)
    roles = _require_string_list(entry, "roles", replicaset_id)

    all_rw = entry.get("all_rw")
    if not isinstance(all_rw, bool):
        raise ConfigError(ConfigErrorKind.MISSING_FIELD, "'all_rw' must be set to true or false", replicaset_id)

    is_router = any(is_router_instance(member) for member in members)

    weight = None
    vshard_group = None
    if not is_router:
        weight = entry.get("weight")
        if weight is None or isinstance(weight, bool) or not isinstance(weight, int):
            raise ConfigError(ConfigErrorKind.MISSING_FIELD, "'weight' is required for storage", replicaset_id)
        vshard_group = entry.get("vshard_group")
        if not vshard_group:
            raise ConfigError(
                ConfigErrorKind.MISSING_FIELD,
                "'vshard_group' is required for storage",
                replicaset_id
            )
        vshard_group = str(vshard_group)

    return TopologyNode(
        replicaset_id=replicaset_id,
        member_instance_ids=frozenset(members),
        roles=tuple(roles),
        is_router=is_router,
        weight=weight,
        vshard_group=vshard_group,
        all_rw=all_rw
    )


def parse_topology(document: Mapping) -> Dict[str, TopologyNode]:
    """Parse the topology document into replica sets keyed by id"""
    document = _require_mapping(document, "Topology document")
    topology = {
        str(replicaset_id): parse_replicaset(str(replicaset_id), entry)
        for replicaset_id, entry in document.items()
    }
    logger.debug(f"Parsed {len(topology)} replica sets")
    return topology


def validate_topology(
    topology: Mapping[str, TopologyNode],
    instances: Optional[Mapping[str, InstanceSpec]] = None
) -> None:
    """
    Check the cross-entry invariants of a topology

    Exactly one replica set must host the router and every instance must
    belong to exactly one replica set. Membership against the instance
    document is checked only when it is given.
    """
    routers = sorted(node.replicaset_id for node in topology.values() if node.is_router)
    if len(routers) != 1:
        raise ConfigError(
            ConfigErrorKind.INVALID_TOPOLOGY,
            f"Expected exactly one router replica set, found {len(routers)}: {routers}"
        )

    owners: Dict[str, str] = {}
    for node in topology.values():
        for member in node.member_instance_ids:
            if member in owners:
                raise ConfigError(
                    ConfigErrorKind.INVALID_TOPOLOGY,
                    f"Instance '{member}' is a member of both '{owners[member]}' and '{node.replicaset_id}'"
                )
            owners[member] = node.replicaset_id

    if instances is None:
        return

    # Instance files usually key instances as "<app>.<name>" while
    # replica sets refer to the bare name
    known = set(instances) | {short_instance_name(instance_id) for instance_id in instances}
    unknown = sorted(set(owners) - known)
    if unknown:
        raise ConfigError(ConfigErrorKind.INVALID_TOPOLOGY, f"Unknown member instances: {unknown}")
    orphaned = sorted(
        instance_id for instance_id in instances
        if instance_id not in owners and short_instance_name(instance_id) not in owners
    )
    if orphaned:
        raise ConfigError(ConfigErrorKind.INVALID_TOPOLOGY, f"Instances without a replica set: {orphaned}")


def instance_roles(topology: Mapping[str, TopologyNode]) -> Dict[str, List[str]]:
    """Map every member instance to the roles of its replica set"""
    return {
        member: list(node.roles)
        for node in topology.values()
        for member in node.member_instance_ids
    }
