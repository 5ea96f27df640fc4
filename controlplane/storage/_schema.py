SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Organizations: tenants and their prepaid wallet
CREATE TABLE IF NOT EXISTS organizations (
    id                        TEXT PRIMARY KEY,
    name                      TEXT NOT NULL DEFAULT '',
    balance                   REAL NOT NULL DEFAULT 0.0,
    low_balance_threshold     REAL NOT NULL DEFAULT 1.0,
    low_balance_alerted_month TEXT,
    created_at                REAL NOT NULL,
    updated_at                REAL NOT NULL
);

-- Wallet transactions: audit trail for every balance movement
CREATE TABLE IF NOT EXISTS wallet_transactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT NOT NULL,
    type            TEXT NOT NULL CHECK (type IN ('deposit', 'charge', 'refund')),
    amount          REAL NOT NULL,
    reference_id    TEXT NOT NULL DEFAULT '',
    description     TEXT NOT NULL DEFAULT '',
    created_at      REAL NOT NULL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

-- Worker nodes
CREATE TABLE IF NOT EXISTS nodes (
    id                            TEXT PRIMARY KEY,
    name                          TEXT NOT NULL,
    region                        TEXT NOT NULL,
    host_address                  TEXT,
    status                        TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'offline', 'online', 'degraded', 'draining', 'disabled')),
    cpu_total                     REAL,
    memory_total_mb               REAL,
    disk_total_mb                 REAL,
    cpu_used                      REAL NOT NULL DEFAULT 0.0,
    memory_used_mb                REAL NOT NULL DEFAULT 0.0,
    disk_used_mb                  REAL NOT NULL DEFAULT 0.0,
    container_count               INTEGER NOT NULL DEFAULT 0,
    registration_token            TEXT,
    registration_token_expires_at REAL,
    node_secret                   TEXT,
    last_heartbeat                REAL,
    last_capacity_alert_at        REAL,
    created_at                    REAL NOT NULL,
    updated_at                    REAL NOT NULL
);

-- Plans: resource envelope and hourly price
CREATE TABLE IF NOT EXISTS plans (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    cpu_cores   REAL NOT NULL,
    memory_mb   REAL NOT NULL,
    storage_mb  REAL NOT NULL DEFAULT 0,
    hourly_rate REAL NOT NULL,
    created_at  REAL NOT NULL
);

-- Runtimes: language/base image presets
CREATE TABLE IF NOT EXISTS runtimes (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    runtime_type  TEXT NOT NULL,
    version       TEXT NOT NULL DEFAULT '',
    base_image    TEXT NOT NULL,
    build_command TEXT,
    start_command TEXT,
    created_at    REAL NOT NULL
);

-- Applications: billable container workloads
CREATE TABLE IF NOT EXISTS applications (
    id                     TEXT PRIMARY KEY,
    organization_id        TEXT NOT NULL,
    name                   TEXT NOT NULL,
    plan_id                TEXT NOT NULL,
    runtime_id             TEXT,
    region                 TEXT NOT NULL,
    instance_count         INTEGER NOT NULL DEFAULT 1,
    node_id                TEXT,
    status                 TEXT NOT NULL DEFAULT 'stopped'
        CHECK (status IN ('building', 'deploying', 'running', 'stopped', 'suspended', 'failed', 'deleted')),
    git_repo_url           TEXT,
    git_branch             TEXT NOT NULL DEFAULT 'main',
    git_oauth_token        TEXT,
    webhook_secret         TEXT,
    system_domain          TEXT NOT NULL DEFAULT '',
    custom_domains_json    TEXT NOT NULL DEFAULT '[]',
    port                   INTEGER NOT NULL DEFAULT 3000,
    current_build_id       INTEGER,
    last_billed_at         REAL NOT NULL,
    created_at             REAL NOT NULL,
    updated_at             REAL NOT NULL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id),
    FOREIGN KEY (plan_id) REFERENCES plans(id)
);

-- Databases: billable managed database instances
CREATE TABLE IF NOT EXISTS databases (
    id              TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    name            TEXT NOT NULL,
    db_type         TEXT NOT NULL,
    version         TEXT NOT NULL DEFAULT '',
    plan_id         TEXT,
    region          TEXT NOT NULL,
    node_id         TEXT,
    status          TEXT NOT NULL DEFAULT 'stopped'
        CHECK (status IN ('building', 'deploying', 'running', 'stopped', 'suspended', 'failed', 'deleted')),
    host            TEXT NOT NULL DEFAULT '',
    port            INTEGER,
    username        TEXT NOT NULL DEFAULT '',
    password        TEXT NOT NULL DEFAULT '',
    database_name   TEXT NOT NULL DEFAULT '',
    last_billed_at  REAL NOT NULL,
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

-- Databases linked into an application's environment
CREATE TABLE IF NOT EXISTS application_databases (
    application_id TEXT NOT NULL,
    database_id    TEXT NOT NULL,
    env_var_prefix TEXT NOT NULL DEFAULT 'DATABASE',
    PRIMARY KEY (application_id, database_id),
    FOREIGN KEY (application_id) REFERENCES applications(id),
    FOREIGN KEY (database_id) REFERENCES databases(id)
);

-- Environment variables (values encrypted at rest)
CREATE TABLE IF NOT EXISTS environment_vars (
    application_id TEXT NOT NULL,
    key            TEXT NOT NULL,
    value          TEXT NOT NULL,
    updated_at     REAL NOT NULL,
    PRIMARY KEY (application_id, key),
    FOREIGN KEY (application_id) REFERENCES applications(id)
);

-- Builds: one row per deploy attempt
CREATE TABLE IF NOT EXISTS builds (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    application_id     TEXT NOT NULL,
    status             TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'building', 'success', 'failed')),
    git_commit_sha     TEXT,
    git_commit_message TEXT,
    error              TEXT,
    created_at         REAL NOT NULL,
    finished_at        REAL,
    FOREIGN KEY (application_id) REFERENCES applications(id)
);

-- Tasks: audit trail of commands dispatched to nodes
CREATE TABLE IF NOT EXISTS tasks (
    task_id       TEXT PRIMARY KEY,
    node_id       TEXT NOT NULL,
    type          TEXT NOT NULL
        CHECK (type IN ('deploy', 'start', 'stop', 'restart', 'scale', 'delete', 'backup', 'restore')),
    resource_type TEXT NOT NULL CHECK (resource_type IN ('application', 'database')),
    resource_id   TEXT NOT NULL,
    payload_json  TEXT NOT NULL DEFAULT '{}',
    priority      INTEGER NOT NULL DEFAULT 5,
    status        TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'sent', 'undelivered', 'cancelled', 'completed', 'failed')),
    result_json   TEXT,
    created_at    REAL NOT NULL,
    sent_at       REAL,
    completed_at  REAL
);

-- Billing ledger: append-only, one row per charge attempt
CREATE TABLE IF NOT EXISTS billing_ledger (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT NOT NULL,
    resource_type   TEXT NOT NULL CHECK (resource_type IN ('application', 'database')),
    resource_id     TEXT NOT NULL,
    plan_id         TEXT NOT NULL,
    instance_count  INTEGER NOT NULL,
    hourly_rate     REAL NOT NULL,
    hours_charged   INTEGER NOT NULL,
    total_cost      REAL NOT NULL,
    period_start    REAL NOT NULL,
    period_end      REAL NOT NULL,
    charged         INTEGER NOT NULL CHECK (charged IN (0, 1)),
    failure_reason  TEXT,
    created_at      REAL NOT NULL
);

-- Backup policies and completed backups
CREATE TABLE IF NOT EXISTS backup_policies (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id   TEXT NOT NULL,
    database_id       TEXT NOT NULL DEFAULT '',
    frequency_minutes INTEGER NOT NULL CHECK (frequency_minutes > 0),
    retention_days    INTEGER NOT NULL DEFAULT 7,
    next_run_at       REAL NOT NULL,
    active            INTEGER NOT NULL DEFAULT 1,
    created_at        REAL NOT NULL,
    UNIQUE (organization_id, database_id)
);

CREATE TABLE IF NOT EXISTS database_backups (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    database_id  TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    size_bytes   INTEGER,
    created_at   REAL NOT NULL
);

-- Alerts: notifications for fleet admins and organizations
CREATE TABLE IF NOT EXISTS alerts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type      TEXT NOT NULL,
    audience        TEXT NOT NULL CHECK (audience IN ('admins', 'organization')),
    organization_id TEXT,
    entity_type     TEXT NOT NULL DEFAULT '',
    entity_id       TEXT,
    message         TEXT NOT NULL,
    severity        TEXT NOT NULL DEFAULT 'info',
    metadata_json   TEXT NOT NULL DEFAULT '{}',
    created_at      REAL NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_nodes_region_status ON nodes(region, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_nodes_registration_token ON nodes(registration_token)
    WHERE registration_token IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_applications_org ON applications(organization_id);
CREATE INDEX IF NOT EXISTS idx_applications_status ON applications(status);
CREATE INDEX IF NOT EXISTS idx_applications_node ON applications(node_id);
CREATE INDEX IF NOT EXISTS idx_databases_org ON databases(organization_id);
CREATE INDEX IF NOT EXISTS idx_databases_status ON databases(status);
CREATE INDEX IF NOT EXISTS idx_databases_node ON databases(node_id);
CREATE INDEX IF NOT EXISTS idx_builds_application ON builds(application_id);
CREATE INDEX IF NOT EXISTS idx_tasks_resource ON tasks(resource_type, resource_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_node ON tasks(node_id, status);
CREATE INDEX IF NOT EXISTS idx_ledger_org ON billing_ledger(organization_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ledger_resource ON billing_ledger(resource_type, resource_id);
CREATE INDEX IF NOT EXISTS idx_backup_policies_due ON backup_policies(active, next_run_at);
CREATE INDEX IF NOT EXISTS idx_backups_database ON database_backups(database_id);
CREATE INDEX IF NOT EXISTS idx_alerts_org ON alerts(organization_id, created_at);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_org ON wallet_transactions(organization_id);
"""
