from __future__ import annotations

import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch
from urllib.error import URLError

from support import make_settings

from flowlogic.services.ofbiz_source import ExportFileSource, OFBizClient, rest_item_to_record


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _json_response(payload: dict) -> _FakeResponse:
    return _FakeResponse(json.dumps(payload).encode('utf-8'))


class ExportFileSourceTests(unittest.TestCase):
    def test_reads_plain_lists_and_wrapped_objects(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            inventory = Path(tmp) / 'ofbiz-inventory.json'
            products = Path(tmp) / 'ofbiz-products.json'
            inventory.write_text(json.dumps([{'productId': 'A', 'quantityOnHand': 5}]), encoding='utf-8')
            products.write_text(json.dumps({'products': [{'productId': 'A', 'internalName': 'Widget'}]}), encoding='utf-8')

            export = ExportFileSource(inventory, products).fetch()

        self.assertEqual(export.records, [{'productId': 'A', 'quantityOnHand': 5}])
        self.assertEqual(export.products[0]['internalName'], 'Widget')

    def test_missing_products_file_is_optional(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            inventory = Path(tmp) / 'inventory.json'
            inventory.write_text(json.dumps({'inventoryItems': []}), encoding='utf-8')
            export = ExportFileSource(inventory, Path(tmp) / 'absent.json').fetch()
        self.assertEqual(export.records, [])
        self.assertEqual(export.products, [])

    def test_reads_optional_variances_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            inventory = Path(tmp) / 'inventory.json'
            variances = Path(tmp) / 'variances.json'
            inventory.write_text('[]', encoding='utf-8')
            variances.write_text(
                json.dumps({'variances': [{'productId': 'A', 'varianceReasonId': 'VAR_LOST'}]}), encoding='utf-8'
            )
            export = ExportFileSource(inventory, variances_path=variances).fetch()
            without = ExportFileSource(inventory, variances_path=Path(tmp) / 'absent.json').fetch()
        self.assertEqual(export.variances[0]['varianceReasonId'], 'VAR_LOST')
        self.assertEqual(without.variances, [])

    def test_rejects_unexpected_shape(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            inventory = Path(tmp) / 'inventory.json'
            inventory.write_text(json.dumps({'inventoryItems': 'nope'}), encoding='utf-8')
            with self.assertRaises(ValueError):
                ExportFileSource(inventory).fetch()


class OFBizClientTests(unittest.TestCase):
    def _client(self) -> OFBizClient:
        return OFBizClient(
            make_settings(ofbiz_base_url='https://ofbiz.local:8443/', ofbiz_username='admin', ofbiz_password='ofbiz')
        )

    def test_requires_connection_settings(self) -> None:
        with self.assertRaises(ValueError):
            OFBizClient(make_settings())

    def test_rest_item_prefers_totals(self) -> None:
        record = rest_item_to_record(
            {'productId': 'A', 'quantityOnHandTotal': 8, 'availableToPromiseTotal': 6, 'quantityOnHand': 1}
        )
        self.assertEqual(record['quantityOnHand'], 8)
        self.assertEqual(record['availableToPromise'], 6)

    @patch('flowlogic.services.ofbiz_source.urlopen')
    def test_fetch_authenticates_then_calls_inventory_service(self, urlopen_mock) -> None:
        urlopen_mock.side_effect = [
            _json_response({'statusCode': 200, 'data': {'access_token': 'tok-1'}}),
            _json_response(
                {
                    'statusCode': 200,
                    'data': {'inventoryItems': [{'productId': 'A', 'quantityOnHandTotal': 3, 'locationSeqId': 'L1'}]},
                }
            ),
        ]
        export = self._client().fetch()

        self.assertEqual(export.records[0]['productId'], 'A')
        self.assertEqual(export.records[0]['quantityOnHand'], 3)
        auth_request = urlopen_mock.call_args_list[0].args[0]
        service_request = urlopen_mock.call_args_list[1].args[0]
        self.assertEqual(auth_request.full_url, 'https://ofbiz.local:8443/rest/auth/token')
        self.assertTrue(auth_request.get_header('Authorization').startswith('Basic '))
        self.assertEqual(service_request.full_url, 'https://ofbiz.local:8443/rest/services/findProductInventoryItems')
        self.assertEqual(service_request.get_header('Authorization'), 'Bearer tok-1')
        self.assertEqual(json.loads(service_request.data), {'facilityId': 'WebStoreWarehouse'})

    @patch('flowlogic.services.ofbiz_source.urlopen', side_effect=URLError('connection refused'))
    def test_network_errors_surface_as_value_errors(self, _urlopen_mock) -> None:
        with self.assertRaises(ValueError):
            self._client().fetch()

    @patch('flowlogic.services.ofbiz_source.urlopen')
    def test_missing_token_is_an_error(self, urlopen_mock) -> None:
        urlopen_mock.return_value = _json_response({'statusCode': 200, 'data': {}})
        with self.assertRaises(ValueError):
            self._client().authenticate()


if __name__ == '__main__':
    unittest.main()
