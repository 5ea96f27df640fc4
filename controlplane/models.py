"""Pydantic request models for the REST API."""

from typing import Dict, List, Optional
from pydantic import BaseModel


class NodeTokenRequest(BaseModel):
    name: str
    region: str
    host_address: Optional[str] = None


class AgentRegisterRequest(BaseModel):
    token: str
    host_address: Optional[str] = None


class HeartbeatRequest(BaseModel):
    node_id: str
    node_secret: str
    cpu_total: Optional[float] = None
    memory_total_mb: Optional[float] = None
    disk_total_mb: Optional[float] = None
    cpu_used: Optional[float] = None
    memory_used_mb: Optional[float] = None
    disk_used_mb: Optional[float] = None
    container_count: Optional[int] = None
    status: Optional[str] = None


class OrganizationRequest(BaseModel):
    id: str
    name: str = ""
    balance: float = 0.0
    low_balance_threshold: float = 1.0


class PlanRequest(BaseModel):
    id: str
    name: str
    cpu_cores: float
    memory_mb: float
    hourly_rate: float
    storage_mb: float = 0


class RuntimeRequest(BaseModel):
    id: str
    name: str
    runtime_type: str
    base_image: str
    version: str = ""
    build_command: Optional[str] = None
    start_command: Optional[str] = None


class ApplicationRequest(BaseModel):
    id: str
    organization_id: str
    name: str
    plan_id: str
    region: str
    runtime_id: Optional[str] = None
    instance_count: int = 1
    git_repo_url: Optional[str] = None
    git_branch: str = "main"
    git_oauth_token: Optional[str] = None
    webhook_secret: Optional[str] = None
    system_domain: str = ""
    custom_domains: List[str] = []
    port: int = 3000
    environment: Dict[str, str] = {}


class DatabaseRequest(BaseModel):
    id: str
    organization_id: str
    name: str
    db_type: str
    region: str
    version: str = ""
    plan_id: Optional[str] = None
    host: str = ""
    port: Optional[int] = None
    username: str = ""
    password: str = ""
    database_name: str = ""


class LinkDatabaseRequest(BaseModel):
    database_id: str
    env_var_prefix: str = "DATABASE"


class EnvVarRequest(BaseModel):
    key: str
    value: str


class DeployRequest(BaseModel):
    git_commit_sha: Optional[str] = None
    git_commit_message: Optional[str] = None


class ScaleRequest(BaseModel):
    instance_count: int


class BackupPolicyRequest(BaseModel):
    organization_id: str
    database_id: Optional[str] = None
    frequency_minutes: int
    retention_days: int = 7


class DepositRequest(BaseModel):
    amount: float
    reference: str = ""


class BillingRunRequest(BaseModel):
    now: Optional[float] = None
