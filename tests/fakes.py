import asyncio
from typing import Any

from aiohttp import WSMsgType, web

from marketsync import hub_protocol


def message_payload(message_id, sender, receiver, **extra) -> dict[str, Any]:
    payload = {
        "id": message_id,
        "senderId": sender,
        "receiverId": receiver,
        "content": f"m{message_id}",
        "sentAt": f"2025-01-01T00:00:{message_id % 60:02d}Z",
        "isRead": False,
    }
    payload.update(extra)
    return payload


def create_fake_marketplace(*, self_id: int = 1) -> web.Application:
    """REST collaborator fake; ``app["inbox"]`` etc. can be edited by tests."""

    app = web.Application()
    app["requests"] = []
    app["posted"] = []
    app["read_ids"] = []
    app["read_event"] = asyncio.Event()
    app["inbox"] = [message_payload(1, 7, self_id), {"id": 99}]
    app["sent"] = [message_payload(2, self_id, 7, isRead=True)]
    app["unread_count"] = 1

    def record(request):
        app["requests"].append((request.method, request.path, request.headers.get("Authorization")))

    async def auction(request):
        record(request)
        auction_id = request.match_info["auction_id"]
        if auction_id == "404":
            return web.json_response({"message": "not found"}, status=404)
        return web.json_response(
            {
                "success": True,
                "data": {
                    "id": int(auction_id),
                    "currentBid": 500,
                    "bidIncrement": 50,
                    "reservePrice": 100,
                    "status": "active",
                    "bids": [
                        {"id": 1, "amount": 300, "bidTime": "2025-01-01T00:00:01Z"},
                        {"id": 2, "amount": 0, "bidTime": "2025-01-01T00:00:02Z"},
                    ],
                },
            }
        )

    async def inbox(request):
        record(request)
        return web.json_response(app["inbox"])

    async def sent(request):
        record(request)
        return web.json_response({"success": True, "data": app["sent"]})

    async def conversation(request):
        record(request)
        contact = int(request.match_info["contact_id"])
        messages = [item for item in app["inbox"] + app["sent"] if contact in (item.get("senderId"), item.get("receiverId"))]
        return web.json_response(messages)

    async def mark_read(request):
        record(request)
        app["read_ids"].append(int(request.match_info["message_id"]))
        app["read_event"].set()
        return web.Response(status=204)

    async def post_message(request):
        record(request)
        body = await request.json()
        app["posted"].append(body)
        return web.json_response(message_payload(50, self_id, body["receiverId"], content=body["content"], isRead=True), status=201)

    async def unread_count(request):
        record(request)
        return web.json_response({"count": app["unread_count"]})

    async def user(request):
        record(request)
        if request.match_info["user_id"] == "13":
            return web.json_response({"success": False, "message": "user not found"})
        return web.json_response({"success": True, "data": {"username": "lina", "profilePicture": "/p/7.png"}})

    async def broken(request):
        return web.Response(text="<html>", content_type="text/html")

    app.router.add_get("/Auction/{auction_id}", auction)
    app.router.add_get("/Message/inbox", inbox)
    app.router.add_get("/Message/sent", sent)
    app.router.add_get("/Message/unread-count", unread_count)
    app.router.add_get("/Message/conversation/{contact_id}", conversation)
    app.router.add_put("/Message/{message_id}/read", mark_read)
    app.router.add_post("/Message", post_message)
    app.router.add_get("/User/{user_id}", user)
    app.router.add_get("/Broken", broken)
    return app


def create_fake_hub(*, negotiate_status: int = 200, negotiate_text: str | None = None) -> web.Application:
    """Chat hub fake speaking the JSON hub protocol.

    Connected server sockets are queued on ``app["sockets"]`` and every frame
    the client sends is queued on ``app["frames"]``.
    """

    app = web.Application()
    app["negotiations"] = []
    app["connect_params"] = []
    app["handshakes"] = []
    app["sockets"] = asyncio.Queue()
    app["frames"] = asyncio.Queue()

    async def negotiate(request):
        app["negotiations"].append(dict(request.query))
        if negotiate_status != 200:
            return web.json_response({"error": "unavailable"}, status=negotiate_status)
        if negotiate_text is not None:
            return web.Response(text=negotiate_text, content_type="text/html")
        index = len(app["negotiations"])
        return web.json_response({"connectionId": f"conn-{index}", "connectionToken": f"token-{index}"})

    async def hub_socket(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        app["connect_params"].append(dict(request.query))
        app["handshakes"].append(await ws.receive_str())
        await ws.send_str("{}" + hub_protocol.RECORD_SEPARATOR)
        await app["sockets"].put(ws)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            for frame in hub_protocol.parse_records(msg.data):
                await app["frames"].put(frame)
        return ws

    app.router.add_post("/chatHub/negotiate", negotiate)
    app.router.add_get("/chatHub", hub_socket)
    return app


async def push(ws: web.WebSocketResponse, target: str, *arguments: Any) -> None:
    await ws.send_str(hub_protocol.encode_record(hub_protocol.invocation(target, arguments)))
