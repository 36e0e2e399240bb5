import unittest
from decimal import Decimal

from aiohttp.test_utils import TestServer

from marketsync.client import CollaboratorError, MarketplaceClient
from tests.fakes import create_fake_marketplace


class MarketplaceClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_fake_marketplace()
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = MarketplaceClient(str(self.server.make_url("/")), "secret")

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_get_auction_bids_unwraps_envelope(self):
        snapshot = await self.client.get_auction_bids(12)

        self.assertEqual(snapshot.auction_id, 12)
        self.assertEqual(snapshot.current_bid, Decimal(500))
        self.assertEqual([bid.id for bid in snapshot.bids], [1, 2])
        self.assertEqual(self.app["requests"][0], ("GET", "/Auction/12", "Bearer secret"))

    async def test_http_error_raises_collaborator_error(self):
        with self.assertRaises(CollaboratorError) as ctx:
            await self.client.get_auction_bids(404)

        self.assertEqual(ctx.exception.status, 404)

    async def test_invalid_json_raises_collaborator_error(self):
        with self.assertRaises(CollaboratorError):
            await self.client._request("GET", "/Broken")

    async def test_message_endpoints(self):
        inbox = await self.client.get_inbox()
        sent = await self.client.get_sent()
        conversation = await self.client.get_conversation(7)

        self.assertEqual([message.id for message in inbox], [1])
        self.assertEqual([message.id for message in sent], [2])
        self.assertTrue(sent[0].is_read)
        self.assertEqual([message.id for message in conversation], [1, 2])

    async def test_mark_read_and_send(self):
        self.assertTrue(await self.client.mark_read(3))

        message = await self.client.send_message(7, "hello")

        self.assertEqual(message.id, 50)
        self.assertEqual(message.content, "hello")
        self.assertEqual(self.app["posted"], [{"receiverId": 7, "content": "hello"}])
        self.assertIn(("PUT", "/Message/3/read", "Bearer secret"), self.app["requests"])

    async def test_unread_count_and_user(self):
        self.assertEqual(await self.client.get_unread_count(), 1)

        profile = await self.client.get_user(7)

        self.assertEqual(profile.name, "lina")
        self.assertEqual(profile.avatar, "/p/7.png")

    async def test_failed_envelope_raises(self):
        with self.assertRaises(CollaboratorError) as ctx:
            await self.client.get_user(13)

        self.assertIn("user not found", str(ctx.exception))

    async def test_unreachable_server_raises_collaborator_error(self):
        client = MarketplaceClient("http://127.0.0.1:9", timeout_s=2)
        try:
            with self.assertRaises(CollaboratorError) as ctx:
                await client.get_inbox()
        finally:
            await client.close()

        self.assertIsNone(ctx.exception.status)


if __name__ == "__main__":
    unittest.main()
