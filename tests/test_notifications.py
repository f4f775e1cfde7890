import smtplib
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from storefront.services.discord_service import DirectMessagesBlocked, DiscordClient, DiscordError
from storefront.services.email_service import EmailError, EmailSender


@pytest.fixture
async def discord_api():
    """A local stand-in for the Discord REST API"""
    calls = []
    limited = set()

    async def member_role(request):
        calls.append((request.method, request.path, request.headers.get("Authorization")))
        role_id = request.match_info["role_id"]
        if role_id == "role-forbidden":
            return web.json_response({"code": 50013, "message": "Missing Permissions"}, status=403)
        if role_id == "role-busy" and role_id not in limited:
            limited.add(role_id)
            return web.json_response({"message": "You are being rate limited.", "retry_after": 0.01,
                                      "global": False}, status=429)
        if role_id == "role-locked":
            return web.json_response({"message": "You are being rate limited.", "retry_after": 60,
                                      "global": False}, status=429)
        return web.Response(status=204)

    async def open_dm(request):
        body = await request.json()
        return web.json_response({"id": f"dm-{body['recipient_id']}"})

    async def send_message(request):
        if request.match_info["channel_id"] == "dm-blocked-user":
            return web.json_response({"code": 50007, "message": "Cannot send messages to this user"}, status=403)
        body = await request.json()
        calls.append(("MESSAGE", request.match_info["channel_id"], body["content"]))
        return web.json_response({"id": "message-1"})

    app = web.Application()
    app.router.add_put("/guilds/{guild_id}/members/{user_id}/roles/{role_id}", member_role)
    app.router.add_delete("/guilds/{guild_id}/members/{user_id}/roles/{role_id}", member_role)
    app.router.add_post("/users/@me/channels", open_dm)
    app.router.add_post("/channels/{channel_id}/messages", send_message)

    async with TestServer(app) as server:
        client = DiscordClient(token="bot-token", api_url=str(server.make_url("")), timeout=2)
        yield client, calls


async def test_assign_and_remove_role(discord_api):
    client, calls = discord_api

    await client.assign_role("guild-1", "user-1", "role-vip", 30)
    await client.remove_role("guild-1", "user-1", "role-vip")

    assert calls == [
        ("PUT", "/guilds/guild-1/members/user-1/roles/role-vip", "Bot bot-token"),
        ("DELETE", "/guilds/guild-1/members/user-1/roles/role-vip", "Bot bot-token"),
    ]


async def test_role_errors_carry_discord_code(discord_api):
    client, _ = discord_api

    with pytest.raises(DiscordError) as exc_info:
        await client.assign_role("guild-1", "user-1", "role-forbidden")

    assert exc_info.value.status == 403
    assert exc_info.value.code == 50013


async def test_rate_limited_call_is_retried_after_retry_after(discord_api):
    client, calls = discord_api

    await client.assign_role("guild-1", "user-1", "role-busy")

    assert [c[1] for c in calls] == ["/guilds/guild-1/members/user-1/roles/role-busy"] * 2


async def test_long_rate_limit_is_reported_without_waiting(discord_api):
    client, calls = discord_api

    with pytest.raises(DiscordError) as exc_info:
        await client.assign_role("guild-1", "user-1", "role-locked")

    assert exc_info.value.status == 429
    assert len(calls) == 1


async def test_direct_notice(discord_api):
    client, calls = discord_api

    await client.send_direct_notice("user-1", "Your key: ABC")

    assert calls == [("MESSAGE", "dm-user-1", "Your key: ABC")]


async def test_closed_dms_are_reported(discord_api):
    client, _ = discord_api

    with pytest.raises(DirectMessagesBlocked):
        await client.send_direct_notice("blocked-user", "hello")


async def test_unreachable_discord_is_a_discord_error():
    client = DiscordClient(token="t", api_url="http://127.0.0.1:9", timeout=1)

    with pytest.raises(DiscordError):
        await client.send_direct_notice("user-1", "hello")


async def test_email_over_starttls(mocker):
    smtp = mocker.patch("smtplib.SMTP")
    sender = EmailSender(host="smtp.example.com", port=587, user="shop", password="pw",
                         sender="noreply@example.com", timeout=2)

    await sender.send_email_notice("alice@example.com", "Order confirmed", "Your key: ABC")

    smtp.assert_called_once_with("smtp.example.com", 587, timeout=2)
    connection = smtp.return_value
    connection.starttls.assert_called_once()
    connection.login.assert_called_once_with("shop", "pw")
    message = connection.send_message.call_args.args[0]
    assert message["To"] == "alice@example.com"
    assert message["Subject"] == "Order confirmed"


async def test_email_failures_raise_email_error(mocker):
    smtp = mocker.patch("smtplib.SMTP")
    smtp.return_value.send_message.side_effect = smtplib.SMTPRecipientsRefused({})
    sender = EmailSender(host="smtp.example.com", port=587, user="", password="", timeout=2)

    with pytest.raises(EmailError):
        await sender.send_email_notice("alice@example.com", "Order confirmed", "body")

    with pytest.raises(EmailError):
        await EmailSender(host="").send_email_notice("alice@example.com", "s", "b")
