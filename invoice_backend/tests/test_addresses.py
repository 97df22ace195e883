import json
import os
import shutil
import tempfile
import unittest

from eth_utils import to_checksum_address

from invoice_backend.addresses import parse_addresses, resolve_addresses
from invoice_backend.errors import AddressLoadError
from invoice_backend.tests.fakes import INVOICE_TOKEN, write_addresses

MARKETPLACE = "0x" + "3c" * 20


class ResolveAddressesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="addresses-")

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir)

    def test_flat_record(self) -> None:
        path = write_addresses(self.tmpdir)
        book = resolve_addresses(path)
        self.assertEqual(book.invoice_token, to_checksum_address(INVOICE_TOKEN))
        self.assertEqual(list(book), ["invoiceToken"])

    def test_nested_deployment_record(self) -> None:
        path = write_addresses(
            self.tmpdir,
            {
                "network": "arbitrum-sepolia",
                "chainId": 421614,
                "deployer": "0x" + "01" * 20,
                "contracts": {"invoiceToken": INVOICE_TOKEN, "marketplace": MARKETPLACE, "notes": "v2"},
            },
        )
        book = resolve_addresses(path)
        self.assertEqual(book.network, "arbitrum-sepolia")
        self.assertEqual(book.chain_id, 421614)
        self.assertEqual(book["marketplace"], to_checksum_address(MARKETPLACE))
        self.assertNotIn("notes", book)

    def test_missing_file(self) -> None:
        with self.assertRaises(AddressLoadError) as ctx:
            resolve_addresses(os.path.join(self.tmpdir, "absent.json"))
        self.assertEqual(ctx.exception.status, 500)

    def test_unparsable_file(self) -> None:
        path = os.path.join(self.tmpdir, "broken.json")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write("{not json")
        with self.assertRaises(AddressLoadError):
            resolve_addresses(path)

    def test_missing_invoice_token_entry(self) -> None:
        with self.assertRaises(AddressLoadError):
            resolve_addresses(write_addresses(self.tmpdir, {"marketplace": MARKETPLACE}))


class ParseAddressesTests(unittest.TestCase):
    def test_invalid_known_contract(self) -> None:
        with self.assertRaises(AddressLoadError):
            parse_addresses({"invoiceToken": "0x1234"})
        with self.assertRaises(AddressLoadError):
            parse_addresses({"invoiceToken": INVOICE_TOKEN, "settlement": 42})

    def test_not_an_object(self) -> None:
        with self.assertRaises(AddressLoadError):
            parse_addresses(json.loads("[1, 2]"))


if __name__ == "__main__":
    unittest.main()
