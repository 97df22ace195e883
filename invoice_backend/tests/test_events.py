import os
import shutil
import tempfile
import unittest
from typing import Any, Dict, List

from invoice_backend.events import DELIVERING, FAILED, SUBSCRIBED, EventSubscription
from invoice_backend.models import InvoiceCreatedEvent, InvoiceTradedEvent
from invoice_backend.store import InvoiceStore
from invoice_backend.tests.fakes import FakeChain, created_log, traded_log

ISSUER = "0x" + "aa" * 20
BUYER = "0x" + "bb" * 20
SECOND_BUYER = "0x" + "cc" * 20


class EventSubscriptionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.chain = FakeChain()
        self.seen: List[Dict[str, Any]] = []

    async def record(self, log: Dict[str, Any]) -> None:
        self.seen.append(log)

    async def test_first_poll_without_start_block_anchors_at_head(self) -> None:
        self.chain.logs["InvoiceCreated"].append(created_log(1, ISSUER, 5, block=90))
        subscription = EventSubscription(source=self.chain, event_name="InvoiceCreated", handler=self.record)
        self.assertEqual(await subscription.poll_once(), 0)
        self.assertEqual(subscription.last_block, 100)
        self.chain.logs["InvoiceCreated"].append(created_log(2, ISSUER, 5, block=101))
        self.chain.block = 105
        self.assertEqual(await subscription.poll_once(), 1)
        self.assertEqual([log["args"]["tokenId"] for log in self.seen], [2])
        self.assertIn(("logs", "InvoiceCreated", 101, 105), self.chain.calls)

    async def test_start_block_replays_history(self) -> None:
        self.chain.logs["InvoiceCreated"].extend(
            [created_log(1, ISSUER, 5, block=10), created_log(2, ISSUER, 5, block=20)]
        )
        subscription = EventSubscription(
            source=self.chain, event_name="InvoiceCreated", handler=self.record, start_block=15
        )
        self.assertEqual(await subscription.poll_once(), 1)
        self.assertEqual(self.seen[0]["args"]["tokenId"], 2)

    async def test_no_new_blocks_skips_fetch(self) -> None:
        subscription = EventSubscription(
            source=self.chain, event_name="InvoiceTraded", handler=self.record, start_block=101
        )
        self.assertEqual(await subscription.poll_once(), 0)
        self.assertEqual(self.chain.calls, [])

    async def test_failing_handler_is_isolated(self) -> None:
        async def flaky(log: Dict[str, Any]) -> None:
            if log["args"]["tokenId"] == 2:
                raise RuntimeError("sink offline")
            self.seen.append(log)

        self.chain.logs["InvoiceCreated"].extend(
            [created_log(token, ISSUER, 5, block=token) for token in (1, 2, 3)]
        )
        subscription = EventSubscription(source=self.chain, event_name="InvoiceCreated", handler=flaky, start_block=1)
        with self.assertLogs("invoice-backend.events", level="ERROR"):
            self.assertEqual(await subscription.poll_once(), 3)
        self.assertEqual([log["args"]["tokenId"] for log in self.seen], [1, 3])
        self.assertEqual((subscription.delivered, subscription.failures), (2, 1))
        self.assertEqual(subscription.state, SUBSCRIBED)
        self.assertEqual(subscription.last_error, "sink offline")
        self.assertEqual(subscription.last_block, 100)

    async def test_failure_state_is_reported(self) -> None:
        async def broken(log: Dict[str, Any]) -> None:
            raise ValueError("bad payload")

        self.chain.logs["InvoiceTraded"].append(traded_log(1, ISSUER, BUYER, 7, block=3))
        subscription = EventSubscription(source=self.chain, event_name="InvoiceTraded", handler=broken, start_block=1)
        with self.assertLogs("invoice-backend.events", level="ERROR"):
            await subscription.poll_once()
        snapshot = subscription.snapshot()
        self.assertEqual(snapshot["state"], FAILED)
        self.assertEqual(snapshot["failures"], 1)
        self.assertEqual(snapshot["lastError"], "bad payload")
        self.assertNotEqual(snapshot["state"], DELIVERING)

    async def test_cursor_is_saved_and_resumed(self) -> None:
        store = InvoiceStore(":memory:")
        self.addCleanup(store.close)
        first = EventSubscription(source=self.chain, event_name="InvoiceCreated", handler=self.record, cursor=store)
        await first.poll_once()
        self.assertEqual(store.load_cursor("InvoiceCreated"), 100)
        self.assertIsNone(store.load_cursor("InvoiceTraded"))

        self.chain.logs["InvoiceCreated"].append(created_log(7, ISSUER, 5, block=103))
        self.chain.block = 104
        second = EventSubscription(source=self.chain, event_name="InvoiceCreated", handler=self.record, cursor=store)
        self.assertEqual(second.last_block, 100)
        self.assertEqual(await second.poll_once(), 1)
        self.assertEqual(store.load_cursor("InvoiceCreated"), 104)

    async def test_start_and_stop(self) -> None:
        subscription = EventSubscription(
            source=self.chain, event_name="InvoiceCreated", handler=self.record, interval=0.01
        )
        subscription.start()
        await subscription.stop()
        await subscription.stop()


class InvoiceStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="invoice-store-")
        self.store = InvoiceStore(os.path.join(self.tmpdir, "nested", "invoices.db"))

    def tearDown(self) -> None:
        self.store.close()
        shutil.rmtree(self.tmpdir)

    def test_created_event_indexes_issuer_as_owner(self) -> None:
        record = self.store.record_created(
            InvoiceCreatedEvent.from_log(created_log(1, ISSUER.upper().replace("0X", "0x"), 500, block=10))
        )
        self.assertEqual(record["owner"], ISSUER)
        self.assertEqual(record["amount"], "500")
        self.assertEqual(self.store.token_ids_for_owner(ISSUER.upper().replace("0X", "0x")), [1])

    def test_trades_move_ownership_and_are_idempotent(self) -> None:
        self.store.record_created(InvoiceCreatedEvent.from_log(created_log(1, ISSUER, 500, block=10)))
        trade = InvoiceTradedEvent.from_log(traded_log(1, ISSUER, BUYER, 600, block=20, tx="0xAB"))
        self.store.record_trade(trade)
        self.store.record_trade(trade)
        self.assertEqual(self.store.token_ids_for_owner(BUYER), [1])
        self.assertEqual(self.store.token_ids_for_owner(ISSUER), [])
        history = self.store.trades_for(1)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["txHash"], "0xab")
        self.assertEqual(history[0]["price"], "600")

    def test_out_of_order_delivery_keeps_latest_owner(self) -> None:
        later = InvoiceTradedEvent.from_log(traded_log(1, BUYER, SECOND_BUYER, 700, block=30, tx="0x02"))
        earlier = InvoiceTradedEvent.from_log(traded_log(1, ISSUER, BUYER, 600, block=20, tx="0x01"))
        self.store.record_trade(later)
        self.store.record_trade(earlier)
        self.store.record_created(InvoiceCreatedEvent.from_log(created_log(1, ISSUER, 500, block=10)))
        record = self.store.get(1)
        self.assertEqual(record["owner"], SECOND_BUYER)
        self.assertEqual(record["issuer"], ISSUER)
        self.assertEqual([entry["blockNumber"] for entry in self.store.trades_for(1)], [20, 30])

    def test_token_ids_sorted_numerically(self) -> None:
        for token in (10, 2, 33):
            self.store.record_created(InvoiceCreatedEvent.from_log(created_log(token, ISSUER, 1, block=token)))
        self.assertEqual(self.store.token_ids(), [2, 10, 33])
        self.assertIsNone(self.store.get(99))

    def test_cursor_never_moves_backwards(self) -> None:
        self.store.save_cursor("InvoiceTraded", 50)
        self.store.save_cursor("InvoiceTraded", 20)
        self.assertEqual(self.store.load_cursor("InvoiceTraded"), 50)
        self.store.close()
        self.store = InvoiceStore(os.path.join(self.tmpdir, "nested", "invoices.db"))
        self.assertEqual(self.store.load_cursor("InvoiceTraded"), 50)


class StoreSinkTests(unittest.IsolatedAsyncioTestCase):
    async def test_sink_methods_write_through(self) -> None:
        store = InvoiceStore(":memory:")
        self.addCleanup(store.close)
        await store.on_invoice_created(InvoiceCreatedEvent.from_log(created_log(5, ISSUER, 1, block=1)))
        await store.on_invoice_traded(InvoiceTradedEvent.from_log(traded_log(5, ISSUER, BUYER, 2, block=2)))
        self.assertEqual(store.get(5)["owner"], BUYER)


if __name__ == "__main__":
    unittest.main()
