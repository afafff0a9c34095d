from __future__ import annotations

import base64
import json
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from loguru import logger

from flowlogic.config import Settings

SOURCE_NAME = 'OFBiz'


@dataclass
class InventoryExport:
    records: list[dict] = field(default_factory=list)
    products: list[dict] = field(default_factory=list)
    variances: list[dict] = field(default_factory=list)


class InventorySource(Protocol):
    def fetch(self) -> InventoryExport: ...


def _read_json_list(path: Path, *, container_key: str) -> list[dict]:
    payload = json.loads(path.read_text(encoding='utf-8'))
    if isinstance(payload, dict):
        payload = payload.get(container_key, [])
    if not isinstance(payload, list):
        raise ValueError(f'{path} must hold a JSON list or an object with a "{container_key}" list')
    return payload


class ExportFileSource:
    """Reads the JSON files produced by the OFBiz Derby export job."""

    def __init__(
        self,
        inventory_path: Path,
        products_path: Path | None = None,
        variances_path: Path | None = None,
    ) -> None:
        self.inventory_path = inventory_path
        self.products_path = products_path
        self.variances_path = variances_path

    def fetch(self) -> InventoryExport:
        records = _read_json_list(self.inventory_path, container_key='inventoryItems')
        products: list[dict] = []
        if self.products_path is not None and self.products_path.exists():
            products = _read_json_list(self.products_path, container_key='products')
        variances: list[dict] = []
        if self.variances_path is not None and self.variances_path.exists():
            variances = _read_json_list(self.variances_path, container_key='variances')
        logger.info(
            'Loaded {} inventory items, {} products and {} variances from {}',
            len(records),
            len(products),
            len(variances),
            self.inventory_path,
        )
        return InventoryExport(records=records, products=products, variances=variances)


def rest_item_to_record(item: dict) -> dict:
    """Map a findProductInventoryItems row onto the export record shape."""
    return {
        'productId': item.get('productId'),
        'quantityOnHand': item.get('quantityOnHandTotal', item.get('quantityOnHand')),
        'availableToPromise': item.get('availableToPromiseTotal', item.get('availableToPromise')),
        'locationSeqId': item.get('locationSeqId'),
        'locationTypeEnumId': item.get('locationTypeEnumId'),
        'facilityId': item.get('facilityId'),
        'unitCost': item.get('unitCost'),
        'currency': item.get('currencyUomId'),
        'inventoryItemId': item.get('inventoryItemId'),
        'lotId': item.get('lotId'),
    }


class OFBizClient:
    """Read-only client for the OFBiz rest-api plugin."""

    def __init__(self, config: Settings) -> None:
        if not config.ofbiz_base_url:
            raise ValueError('OFBIZ_BASE_URL is required for a live OFBiz pull')
        if not config.ofbiz_username or not config.ofbiz_password:
            raise ValueError('OFBIZ_USERNAME and OFBIZ_PASSWORD are required for a live OFBiz pull')

        self.base_url = config.ofbiz_base_url.rstrip('/')
        self.username = config.ofbiz_username
        self.password = config.ofbiz_password
        self.facility_id = config.ofbiz_facility_id
        self.timeout = config.ofbiz_timeout_seconds
        self.ssl_context = ssl.create_default_context()
        if not config.ofbiz_verify_tls:
            # Stock OFBiz installs ship a self-signed certificate on :8443.
            self.ssl_context.check_hostname = False
            self.ssl_context.verify_mode = ssl.CERT_NONE
        self.access_token: str | None = None

    def _send(self, path: str, *, payload: dict | None, headers: dict[str, str]) -> dict:
        data = json.dumps(payload).encode('utf-8') if payload is not None else None
        req = Request(
            url=f'{self.base_url}{path}',
            data=data,
            headers={'Content-Type': 'application/json', **headers},
            method='POST',
        )
        try:
            with urlopen(req, timeout=self.timeout, context=self.ssl_context) as response:
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise ValueError(f'OFBiz API error {exc.code} on {path}: {body}') from exc
        except URLError as exc:
            raise ValueError(f'OFBiz API network error on {path}: {exc.reason}') from exc

    def authenticate(self) -> str:
        credentials = base64.b64encode(f'{self.username}:{self.password}'.encode('utf-8')).decode('ascii')
        parsed = self._send('/rest/auth/token', payload=None, headers={'Authorization': f'Basic {credentials}'})
        token = parsed.get('access_token') or (parsed.get('data') or {}).get('access_token')
        if not token:
            raise ValueError('OFBiz did not return an access token')
        self.access_token = token
        return token

    def call_service(self, service: str, params: dict) -> dict:
        if not self.access_token:
            self.authenticate()
        parsed = self._send(
            f'/rest/services/{service}',
            payload=params,
            headers={'Authorization': f'Bearer {self.access_token}'},
        )
        # The plugin wraps service output in {"statusCode", "data"}.
        return parsed.get('data', parsed)

    def fetch(self) -> InventoryExport:
        data = self.call_service('findProductInventoryItems', {'facilityId': self.facility_id})
        records = [rest_item_to_record(item) for item in data.get('inventoryItems', [])]
        logger.info('Fetched {} inventory items from OFBiz facility {}', len(records), self.facility_id)
        return InventoryExport(
            records=records,
            products=data.get('products', []),
            variances=data.get('inventoryItemVariances', []),
        )
