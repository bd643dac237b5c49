"""FastAPI dependencies shared by the Pipewright routers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from pipewright.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    """Dependency that retrieves the pipeline from app state."""
    return request.app.state.pipeline  # type: ignore[no-any-return]


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Dependency that retrieves the session factory from app state."""
    return request.app.state.session_factory  # type: ignore[no-any-return]
