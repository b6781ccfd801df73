from typing import Any, Dict, List

import httpx
from loguru import logger


class IPRegistrar:
    """
    Client for the external IP registration service.

    register() never raises for service-side failures; it returns
    {'success': False, 'error': ...} so the caller can decide to retry.
    """

    def __init__(
            self,
            *,
            base_url: str | None,
            token: str | None = None,
            spg_nft_contract: str | None = None,
            transport: httpx.AsyncBaseTransport | None = None
    ):
        self.base_url = base_url.rstrip('/') if base_url else None
        self.token = token
        self.spg_nft_contract = spg_nft_contract
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def register(self, parent_asset_ids: List[str], metadata: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured:
            return {'success': False, 'error': 'IP registrar is not configured'}

        payload: Dict[str, Any] = {'parentAssetIds': list(parent_asset_ids), 'metadata': metadata}
        if self.spg_nft_contract:
            payload['spgNftContract'] = self.spg_nft_contract

        headers = {}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'

        timeout = httpx.Timeout(10.0, read=120.0)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                response = await client.post(f'{self.base_url}/register', json=payload, headers=headers)
            except httpx.RequestError as e:
                return {'success': False, 'error': f'Failed to connect to IP registrar: {e}'}

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200 or not isinstance(data, dict):
            detail = data.get('error') if isinstance(data, dict) else None
            return {'success': False, 'error': detail or f'IP registrar error {response.status_code}: {response.text}'}

        if not data.get('success') or not data.get('ipId'):
            return {'success': False, 'error': data.get('error') or 'IP registrar returned no asset id'}

        logger.info(f'[registrar] registered {data["ipId"]} with {len(parent_asset_ids)} parent(s)')
        return {'success': True, 'ipId': data['ipId'], 'txHash': data.get('txHash')}
