"""Router package: collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from controlplane.routers import (
    admin,
    agent,
    applications,
    backups,
    billing,
    databases,
    nodes,
    webhooks,
)


def register_all_routers(app: FastAPI):
    app.include_router(admin.router)
    app.include_router(nodes.router)
    app.include_router(agent.router)
    app.include_router(applications.router)
    app.include_router(databases.router)
    app.include_router(billing.router)
    app.include_router(backups.router)
    app.include_router(webhooks.router)
    agent.register(app)
