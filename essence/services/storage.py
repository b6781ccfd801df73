import asyncio
import mimetypes
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple

from loguru import logger
from supabase import create_client

from essence.core.config import Settings
from essence.core.errors import StorageError


@dataclass
class StoredObject:
    public_url: str
    storage_path: str


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def is_url(ref: str | None) -> bool:
    return bool(ref) and (ref.startswith('http://') or ref.startswith('https://'))


def extension_for(url: str, content_type: str | None, default: str = 'bin') -> str:
    """
    File extension for a re-hosted artifact: from the URL path first,
    then from the content type.
    """
    path = url.split('?', 1)[0].rstrip('/')
    ext = os.path.splitext(path)[1].lstrip('.').lower()
    if ext and len(ext) <= 5:
        return ext

    if content_type:
        guessed = mimetypes.guess_extension(content_type.split(';', 1)[0].strip())
        if guessed:
            return guessed.lstrip('.')
    return default


class LocalStorage:
    """
    Files under STORAGE_ROOT, served by the app at /storage.
    """

    def __init__(self, root: str, public_url: str):
        self.root = root
        self.public_url = public_url.rstrip('/')

    def _full_path(self, storage_path: str) -> str:
        full_path = os.path.normpath(os.path.join(self.root, storage_path))
        if not full_path.startswith(os.path.normpath(self.root) + os.sep):
            raise StorageError(f'Invalid storage path "{storage_path}"')
        return full_path

    async def upload(self, storage_path: str, data: bytes, content_type: str | None = None) -> StoredObject:
        full_path = self._full_path(storage_path)
        ensure_dir(os.path.dirname(full_path))

        try:
            with open(full_path, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f'Failed to save file "{storage_path}": {e}')

        return StoredObject(public_url=f'{self.public_url}/{storage_path}', storage_path=storage_path)

    async def read(self, storage_path: str) -> bytes:
        full_path = self._full_path(storage_path)
        try:
            with open(full_path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise StorageError(f'Failed to read file "{storage_path}": {e}')


class SupabaseStorage:
    """
    Supabase Storage bucket. The supabase client is synchronous, calls run
    in a worker thread.
    """

    def __init__(self, url: str, service_role_key: str, bucket: str):
        self.bucket = bucket
        self._client = create_client(url, service_role_key)

    def _bucket(self):
        return self._client.storage.from_(self.bucket)

    async def upload(self, storage_path: str, data: bytes, content_type: str | None = None) -> StoredObject:
        options = {'content-type': content_type or 'application/octet-stream', 'upsert': 'true'}

        try:
            await asyncio.to_thread(self._bucket().upload, storage_path, data, options)
            public_url = await asyncio.to_thread(self._bucket().get_public_url, storage_path)
        except Exception as e:
            raise StorageError(f'Supabase upload failed for "{storage_path}": {e}')

        return StoredObject(public_url=public_url, storage_path=storage_path)

    async def read(self, storage_path: str) -> bytes:
        try:
            return await asyncio.to_thread(self._bucket().download, storage_path)
        except Exception as e:
            raise StorageError(f'Supabase download failed for "{storage_path}": {e}')


def build_storage(settings: Settings):
    if settings.STORAGE_BACKEND == 'supabase':
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError('SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set')
        return SupabaseStorage(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, settings.SUPABASE_BUCKET)

    if settings.STORAGE_BACKEND != 'local':
        raise RuntimeError(f'Unknown STORAGE_BACKEND "{settings.STORAGE_BACKEND}"')

    ensure_dir(settings.STORAGE_ROOT)
    return LocalStorage(settings.STORAGE_ROOT, settings.STORAGE_PUBLIC_URL)


async def download_with_retry(
        download: Callable[[str], Awaitable[Tuple[bytes, str | None]]],
        url: str,
        *,
        attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> Tuple[bytes, str | None]:
    """
    Exponential backoff between attempts: 1s, 2s, 4s...
    """
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await download(url)
        except StorageError as e:
            last_error = e
            logger.warning(f'[storage] download attempt {attempt}/{attempts} failed for {url}: {e}')
            if attempt < attempts:
                await sleep(2 ** (attempt - 1))

    raise StorageError(f'Failed to download {url} after {attempts} attempts: {last_error}')
