from typing import AsyncGenerator
from fastapi import Depends
from fastapi.requests import HTTPConnection
from sqlalchemy.ext.asyncio import AsyncSession

from essence.core.config import Settings
from essence.services.container import Services


def get_services(connection: HTTPConnection) -> Services:
    return connection.app.state.services


def get_settings(services: Services = Depends(get_services)) -> Settings:
    return services.settings


async def get_db(services: Services = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    async with services.sessionmaker() as session:
        yield session
