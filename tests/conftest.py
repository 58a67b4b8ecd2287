"""Shared pytest fixtures for the RBAC engine tests."""
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from taskboard.core.cache import InMemoryPermissionCache
from taskboard.core.database.engine import build_engine, init_db
from taskboard.core.subjects import Subject
from taskboard.features.organisations.service import OrganisationService
from taskboard.features.roles.sync import sync_permissions, sync_system_templates


PERMISSIONS = [
    "task.view",
    "task.create",
    "task.update",
    "task.delete",
    "task.assign",
    "project.view",
    "project.update",
    "user.view",
    "manage-roles",
]

SYSTEM_TEMPLATES = {
    "admin": {
        "display_name": "Administrator",
        "description": "Full administrative access",
        "level": 100,
        "permissions": "all",
    },
    "member": {
        "display_name": "Member",
        "description": "Regular organisation member",
        "level": 40,
        "permissions": ["task.view", "task.create", "project.view"],
    },
    "guest": {
        "display_name": "Guest",
        "level": 10,
        "permissions": ["task.view"],
        "can_be_deleted": True,
    },
}


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'rbac.sqlite'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture()
async def db(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def cache() -> InMemoryPermissionCache:
    return InMemoryPermissionCache(ttl_seconds=600)


@pytest_asyncio.fixture()
async def catalogue(db: AsyncSession):
    """Registered permissions plus the admin/member/guest system templates."""
    await sync_permissions(db, PERMISSIONS)
    templates = await sync_system_templates(db, SYSTEM_TEMPLATES)
    return {template.name: template for template in templates}


@pytest_asyncio.fixture()
async def organisation_id(db: AsyncSession) -> str:
    organisation = await OrganisationService(db).create_organisation("Acme")
    return organisation.id


@pytest_asyncio.fixture()
async def other_organisation_id(db: AsyncSession) -> str:
    organisation = await OrganisationService(db).create_organisation("Globex")
    return organisation.id


@pytest_asyncio.fixture()
async def alice(db: AsyncSession, organisation_id: str) -> Subject:
    subject = Subject.user("alice")
    await OrganisationService(db).add_member(subject, organisation_id)
    return subject


@pytest_asyncio.fixture()
async def bob(db: AsyncSession, organisation_id: str) -> Subject:
    subject = Subject.user("bob")
    await OrganisationService(db).add_member(subject, organisation_id)
    return subject


@pytest_asyncio.fixture()
async def carol(db: AsyncSession, organisation_id: str) -> Subject:
    subject = Subject.user("carol")
    await OrganisationService(db).add_member(subject, organisation_id)
    return subject
