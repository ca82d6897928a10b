from enum import Enum
from pathlib import Path
from typing import FrozenSet, Optional, Tuple
from pydantic import BaseModel, Field


class InstanceSpec(BaseModel):
    """A single node process declared in the instance file"""
    instance_id: str = Field(..., description="Instance identifier")
    workdir: Optional[str] = Field(None, description="Working directory inside the container")
    advertise_host: Optional[str] = Field(None, description="Host part of advertise_uri")
    advertise_port: Optional[int] = Field(
        None,
        description="Binary port parsed from advertise_uri",
        ge=1,
        le=65535
    )
    http_port: Optional[int] = Field(None, description="HTTP port", ge=1, le=65535)

    model_config = {"frozen": True}


class TopologyNode(BaseModel):
    """A replica set declared in the topology file"""
    replicaset_id: str = Field(..., description="Replica set identifier")
    member_instance_ids: FrozenSet[str] = Field(..., description="Member instance ids")
    roles: Tuple[str, ...] = Field(..., description="Enabled roles, in declaration order")
    is_router: bool = Field(..., description="Whether the replica set hosts the router")
    weight: Optional[int] = Field(None, description="vshard weight (storage only)")
    vshard_group: Optional[str] = Field(None, description="vshard group (storage only)")
    all_rw: bool = Field(..., description="Whether all members accept writes")

    model_config = {"frozen": True}


class TopologySourceKind(str, Enum):
    """How the topology is applied to a running cluster"""
    STRUCTURED_FILE = "structured_file"
    SCRIPT = "script"

    @classmethod
    def from_file_name(cls, file_name: str) -> "TopologySourceKind":
        if Path(file_name).suffix.lower() in (".yml", ".yaml"):
            return cls.STRUCTURED_FILE
        return cls.SCRIPT


class TopologySource(BaseModel):
    """Where the topology comes from and how it is applied"""
    path: str = Field(..., description="Local path to the topology file or script", min_length=1)
    kind: TopologySourceKind = Field(..., description="Application mechanism")
    instances_path: Optional[str] = Field(None, description="Local path to the instance file")
    remote_dir: str = Field(default="/app", description="Container directory the files are copied to")
    run_dir: str = Field(default="/tmp/run", description="Run directory of the instances")
    tool: str = Field(default="cartridge", description="Topology management command")

    model_config = {"frozen": True}

    @classmethod
    def from_path(cls, path: str, **kwargs) -> "TopologySource":
        return cls(path=path, kind=TopologySourceKind.from_file_name(path), **kwargs)
