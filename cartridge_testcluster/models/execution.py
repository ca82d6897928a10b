from typing import Literal, Optional, Union
from pydantic import BaseModel, Field


class ExecResult(BaseModel):
    """Outcome of a process executed inside the container"""
    exit_code: int = Field(..., description="Process exit code")
    stdout: str = Field(default="", description="Captured standard output")
    stderr: str = Field(default="", description="Captured standard error")

    model_config = {"frozen": True}


class Endpoint(BaseModel):
    """Router address as seen from inside the container"""
    host: str = Field(default="localhost", description="Router host")
    port: int = Field(default=3301, description="Router internal port", ge=1, le=65535)

    model_config = {"frozen": True}


class Credentials(BaseModel):
    """Router user credentials"""
    username: str = Field(..., description="User name")
    password: str = Field(..., description="User password")

    model_config = {"frozen": True}


class PlainTransport(BaseModel):
    kind: Literal["plain"] = "plain"

    model_config = {"frozen": True}


class SslTransport(BaseModel):
    kind: Literal["ssl"] = "ssl"

    model_config = {"frozen": True}


class MutualTlsTransport(BaseModel):
    kind: Literal["mtls"] = "mtls"
    cert_path: str = Field(..., description="Client certificate path inside the container", min_length=1)
    key_path: str = Field(..., description="Client key path inside the container", min_length=1)

    model_config = {"frozen": True}


TransportConfig = Union[PlainTransport, SslTransport, MutualTlsTransport]


def select_transport(
    ssl: bool = False,
    cert_path: Optional[str] = None,
    key_path: Optional[str] = None
) -> TransportConfig:
    """
    Pick the transport variant from the populated options

    Both a certificate and a key select mutual TLS regardless of the SSL
    flag; empty strings count as absent.
    """
    if cert_path and key_path:
        return MutualTlsTransport(cert_path=cert_path, key_path=key_path)
    if ssl:
        return SslTransport()
    return PlainTransport()
