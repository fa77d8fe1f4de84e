"""Integration tests for Navigator + Engine + Store interaction.

The ``Http`` store runs against an in-process fake of the chat backend served
through ``httpx.MockTransport``.
"""

import asyncio
import json
import uuid

import httpx
import pytest
from polychat.auth import Static
from polychat.llm import Backend, Echo
from polychat.models import ProviderType
from polychat.navigation import Navigator
from polychat.store import Http, InMemory
from polychat.titles import FirstMessage


class FakeBackend:
    """Minimal chat backend keeping chats in a dict."""

    def __init__(self, token="tok"):
        self.token = token
        self.chats = {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"message": "Unauthorized"})

        body = json.loads(request.content) if request.content else {}
        path = request.url.path
        if request.method == "GET" and path == "/chats/user-chats":
            return httpx.Response(200, json={"chats": list(reversed(self.chats.values()))})
        if request.method == "GET" and path.startswith("/chats/"):
            chat = self.chats.get(path.rsplit("/", 1)[-1])
            if chat is None:
                return httpx.Response(404, json={"message": "Chat not found"})
            return httpx.Response(200, json={"chat": chat})
        if request.method == "POST" and path == "/chats/new-chat":
            chat = {"_id": uuid.uuid4().hex, **body}
            self.chats[chat["_id"]] = chat
            return httpx.Response(201, json={"chat": chat})
        if request.method == "PUT" and path == "/chats/update-chat-messages":
            self.chats[body["chatId"]]["messages"].extend(body["messages"])
            return httpx.Response(200, json={"message": "Messages updated"})
        if request.method == "POST" and path == "/chats/get-response":
            return self.agent_reply(body)
        return httpx.Response(404)

    def agent_reply(self, body):
        reply = {"text": f"Agent says: {body['message']['text']}", "sender": "ai"}
        chat_id = body["chatId"]
        data = {"response": reply}
        if chat_id is None:
            chat_id = uuid.uuid4().hex
            self.chats[chat_id] = {
                "_id": chat_id,
                "title": "Agent chat",
                "messages": [],
                "model": body["model"],
            }
            data.update(newChatId=chat_id, newChatTitle="Agent chat")
        self.chats[chat_id]["messages"].extend([body["message"], reply])
        return httpx.Response(200, json=data)


def http_store(backend, auth):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return Http(auth, "http://backend.test", client=client)


def make_navigator(auth, store, llms=None):
    return Navigator(
        auth=auth,
        store=store,
        llms=llms or {ProviderType.DIRECT: Echo(delay=0)},
        titles=FirstMessage(),
    )


@pytest.fixture(params=["InMemory", "Http"])
def store_setup(request):
    auth = Static("tok")
    if request.param == "InMemory":
        return auth, InMemory()
    return auth, http_store(FakeBackend(), auth)


class TestConversationPersistence:
    """The same conversation flow against every store implementation."""

    def test_conversation_is_saved_and_resumed(self, store_setup):
        auth, store = store_setup
        navigator = make_navigator(auth, store)

        async def converse():
            await navigator.navigate("/new-chat")
            await navigator.send("Can I deduct my home office?")
            await navigator.send("And my laptop?")
            return navigator.engine.chat_id

        chat_id = asyncio.run(converse())

        assert navigator.route == f"/chat/{chat_id}"
        assert navigator.chats[0].title == "Can I deduct my home office?"

        reopened = make_navigator(auth, store)
        asyncio.run(reopened.navigate(f"/chat/{chat_id}"))
        texts = [m.text for m in reopened.engine.messages]

        assert len(texts) == 5
        assert texts[1] == "Can I deduct my home office?"
        assert texts[3] == "And my laptop?"
        assert texts[4].endswith("And my laptop?")

    def test_chat_list_is_most_recent_first(self, store_setup):
        auth, store = store_setup
        navigator = make_navigator(auth, store)

        async def two_chats():
            for text in ("First chat", "Second chat"):
                await navigator.navigate("/new-chat")
                await navigator.send(text)
            return await make_navigator(auth, store).refresh_chats()

        chats = asyncio.run(two_chats())
        assert [c.title for c in chats] == ["Second chat", "First chat"]


class TestHttpSession:
    def test_revoked_token_forces_login(self):
        backend = FakeBackend()
        auth = Static("tok")
        navigator = make_navigator(auth, http_store(backend, auth))
        asyncio.run(navigator.navigate("/new-chat"))
        asyncio.run(navigator.send("Hello"))

        backend.token = "rotated"
        asyncio.run(navigator.send("Still there?"))

        assert navigator.route == "/login"
        assert navigator.engine is None
        assert asyncio.run(auth.get_valid_token()) is None

    def test_custom_agent_chat_created_by_backend(self):
        backend = FakeBackend()
        auth = Static("tok")
        store = http_store(backend, auth)
        navigator = make_navigator(
            auth, store, llms={ProviderType.CUSTOM_AGENT: Backend(store)}
        )

        async def converse():
            await navigator.navigate("/new-chat")
            navigator.select_model("tax-advisor-agent")
            await navigator.send("What is VAT?")
            await navigator.send("And the rate?")

        asyncio.run(converse())

        chat_id = navigator.engine.chat_id
        assert chat_id in backend.chats
        assert navigator.chats[0].title == "Agent chat"
        assert navigator.engine.messages[-1].text == "Agent says: And the rate?"
        assert len(backend.chats[chat_id]["messages"]) == 4
        methods = [method for method, path in backend.requests]
        assert ("POST", "/chats/new-chat") not in backend.requests
        assert "PUT" not in methods
