from typing import Any, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from essence.core.errors import SubmissionError, StorageError


DEFAULT_EVENTS_FILTER = ['start', 'output', 'logs', 'completed']


class ReplicateClient:
    """
    Thin wrapper over the Replicate predictions API.
    """

    def __init__(
            self,
            *,
            api_token: str | None,
            base_url: str = 'https://api.replicate.com/v1',
            transport: httpx.AsyncBaseTransport | None = None
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip('/')
        self._transport = transport
        self._timeout = httpx.Timeout(10.0, read=60.0)

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_token:
            headers['Authorization'] = f'Bearer {self.api_token}'
        return headers

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport, **kwargs)

    async def _request(self, method: str, path: str, *, json: Any = None) -> Dict[str, Any]:
        url = f'{self.base_url}{path}'

        async with self._client(headers=self._headers()) as client:
            try:
                response = await client.request(method, url, json=json)
            except httpx.RequestError as e:
                raise SubmissionError(f'Failed to connect to Replicate: {e}')

        if response.status_code not in (200, 201):
            raise SubmissionError(f'Replicate error {response.status_code}: {response.text}')

        try:
            data = response.json()
        except ValueError:
            raise SubmissionError('Replicate returned invalid JSON')
        if not isinstance(data, dict):
            raise SubmissionError('Replicate returned invalid JSON')
        return data

    async def create_prediction(
            self,
            *,
            model: str,
            input: Dict[str, Any],
            webhook: str | None = None,
            events_filter: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        "owner/name" goes to the model endpoint, "owner/name:version" to
        /predictions with an explicit version.
        """
        payload: Dict[str, Any] = {'input': input}
        if webhook:
            payload['webhook'] = webhook
            payload['webhook_events_filter'] = events_filter or DEFAULT_EVENTS_FILTER

        if ':' in model:
            payload['version'] = model.split(':', 1)[1]
            path = '/predictions'
        else:
            path = f'/models/{model}/predictions'

        data = await self._request('POST', path, json=payload)
        if not data.get('id'):
            raise SubmissionError('Replicate response missing prediction id')

        logger.info(f'[replicate] created prediction {data["id"]} on {model}')
        return data

    async def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return await self._request('GET', f'/predictions/{prediction_id}')

    async def cancel_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return await self._request('POST', f'/predictions/{prediction_id}/cancel')

    async def download(self, url: str) -> Tuple[bytes, str | None]:
        """
        Fetches artifact bytes. Returns (content, content_type).
        """
        async with self._client(follow_redirects=True) as client:
            try:
                response = await client.get(url)
            except httpx.RequestError as e:
                raise StorageError(f'Failed to download {url}: {e}')

        if response.status_code != 200:
            raise StorageError(f'Download error {response.status_code} for {url}')

        return response.content, response.headers.get('content-type')
