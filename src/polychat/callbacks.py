"""Callbacks wiring the Dash view to the navigator.

Callbacks never touch conversation state directly: they schedule coroutines on
the app's background loop and render snapshots taken on that loop.
"""

import logging

from dash import ALL, Input, Output, State, callback_context, html, no_update

from .errors import ChatError, ModelLockedError
from .models import find_model

logger = logging.getLogger(__name__)


async def _snapshot(navigator):
    """Copies what the view needs. Runs on the background loop."""
    engine = navigator.engine
    view = {
        "route": navigator.route,
        "chats": list(navigator.chats),
        "messages": [],
        "pending_id": None,
        "busy": False,
        "model_id": navigator.default_model.id,
        "model_locked": False,
        "error": navigator.last_error,
    }
    if engine is not None:
        view["messages"] = [msg.model_copy() for msg in engine.messages]
        view["busy"] = engine.busy
        view["pending_id"] = engine.messages[-1].id if engine.busy else None
        view["model_id"] = engine.state.selected_model.id
        view["model_locked"] = engine.busy or engine.chat_id is not None
    return view


def register_callbacks(app):
    def snapshot():
        return app.loop.run(_snapshot(app.navigator))

    def render_messages(view):
        messages = app.layout_builder.build_messages(view["messages"], view["pending_id"])
        if view["error"]:
            messages.insert(0, html.Div(view["error"], className="alert alert-warning"))
        return messages

    @app.callback(
        [
            Output("login_panel", "hidden"),
            Output("chat_panel", "hidden"),
            Output("messages_container", "children"),
            Output("conversations_list", "children"),
            Output("model_select", "value"),
            Output("model_select", "disabled"),
            Output("stream_interval", "disabled"),
            Output("url_location", "pathname"),
        ],
        [Input("url_location", "pathname")],
    )
    def render_route(pathname):
        navigator = app.navigator
        if not (pathname == navigator.route and navigator.engine is not None):
            app.loop.run(navigator.navigate(pathname))
        parts = navigator.url.parse(navigator.route)
        if parts.view in ("login", "register"):
            return False, True, [], [], no_update, no_update, True, (
                navigator.route if navigator.route != pathname else no_update
            )

        if not navigator.chats:
            app.loop.run(navigator.refresh_chats())
        view = snapshot()
        return (
            True,
            False,
            render_messages(view),
            app.layout_builder.build_chat_list(view["chats"]),
            view["model_id"],
            view["model_locked"],
            not view["busy"],
            view["route"] if view["route"] != pathname else no_update,
        )

    @app.callback(
        [
            Output("input_textarea", "value"),
            Output("stream_interval", "disabled", allow_duplicate=True),
            Output("submit_button", "disabled"),
        ],
        [Input("submit_button", "n_clicks")],
        [State("input_textarea", "value")],
        prevent_initial_call=True,
    )
    def send_message(n_clicks, user_input):
        engine = app.navigator.engine
        if not n_clicks or engine is None or engine.busy:
            return no_update, no_update, no_update
        if not user_input or not user_input.strip():
            return no_update, no_update, no_update

        future = app.loop.submit(app.navigator.send(user_input))
        future.add_done_callback(_log_failure)
        return "", False, True

    @app.callback(
        [
            Output("messages_container", "children", allow_duplicate=True),
            Output("conversations_list", "children", allow_duplicate=True),
            Output("url_location", "pathname", allow_duplicate=True),
            Output("stream_interval", "disabled", allow_duplicate=True),
            Output("submit_button", "disabled", allow_duplicate=True),
            Output("model_select", "disabled", allow_duplicate=True),
            Output("status_indicator", "hidden"),
        ],
        [Input("stream_interval", "n_intervals")],
        [State("url_location", "pathname")],
        prevent_initial_call=True,
    )
    def poll_conversation(n_intervals, pathname):
        view = snapshot()
        return (
            render_messages(view),
            app.layout_builder.build_chat_list(view["chats"]),
            view["route"] if view["route"] != pathname else no_update,
            not view["busy"],
            view["busy"],
            view["model_locked"],
            not view["busy"],
        )

    @app.callback(
        [
            Output("messages_container", "children", allow_duplicate=True),
            Output("url_location", "pathname", allow_duplicate=True),
        ],
        [Input("new_conversation_button", "n_clicks")],
        [State("model_select", "value")],
        prevent_initial_call=True,
    )
    def create_new_chat(n_clicks, model_id):
        if not n_clicks:
            return no_update, no_update

        async def open_new():
            model = find_model(model_id, app.navigator.models) if model_id else None
            app.navigator.open_new_chat(model)
            return await _snapshot(app.navigator)

        view = app.loop.run(open_new())
        return render_messages(view), view["route"]

    @app.callback(
        Output("url_location", "pathname", allow_duplicate=True),
        [Input({"type": "convo-item", "id": ALL}, "n_clicks")],
        prevent_initial_call=True,
    )
    def switch_conversation(n_clicks):
        if not any(n_clicks):
            return no_update
        selected_chat_id = callback_context.triggered_id["id"]
        return app.navigator.url.build_conversation_path(selected_chat_id)

    @app.callback(
        Output("messages_container", "children", allow_duplicate=True),
        [Input("model_select", "value")],
        prevent_initial_call=True,
    )
    def select_model(model_id):
        async def select():
            app.navigator.select_model(model_id)
            return await _snapshot(app.navigator)

        try:
            view = app.loop.run(select())
        except ModelLockedError:
            return no_update
        return render_messages(view)

    @app.callback(
        [
            Output("url_location", "pathname", allow_duplicate=True),
            Output("auth_feedback", "children"),
        ],
        [Input("login_button", "n_clicks"), Input("register_button", "n_clicks")],
        [
            State("email_input", "value"),
            State("password_input", "value"),
            State("name_input", "value"),
        ],
        prevent_initial_call=True,
    )
    def authenticate(login_clicks, register_clicks, email, password, name):
        if not email or not password:
            return no_update, "Please fill in your email and password."
        registering = callback_context.triggered_id == "register_button"
        if registering and not name:
            return no_update, "Please fill in your name to create an account."

        async def sign_in():
            if registering:
                await app.navigator.auth.register(email, password, name)
            return await app.navigator.login(email, password)

        try:
            route = app.loop.run(sign_in())
        except ChatError as e:
            return no_update, e.message
        return route, ""

    @app.callback(
        Output("url_location", "pathname", allow_duplicate=True),
        [Input("logout_button", "n_clicks")],
        prevent_initial_call=True,
    )
    def logout(n_clicks):
        if not n_clicks:
            return no_update
        return app.loop.run(_logout(app.navigator))

    _register_clientside_callbacks(app)


async def _logout(navigator):
    return navigator.logout()


def _log_failure(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Sending a message failed: %s", exc, exc_info=exc)


def _register_clientside_callbacks(app):
    # Enter sends, Shift+Enter inserts a newline
    app.clientside_callback(
        """
        function(hidden) {
            if (!window.polychatEnterToSend) {
                window.polychatEnterToSend = true;
                document.addEventListener('keydown', function(event) {
                    if (event.target.id !== 'input_textarea') {
                        return;
                    }
                    if (event.key !== 'Enter' || event.shiftKey || event.isComposing) {
                        return;
                    }
                    event.preventDefault();
                    const send = document.getElementById('submit_button');
                    if (send && !send.disabled && event.target.value.trim()) {
                        send.click();
                    }
                });
            }
            return window.dash_clientside.no_update;
        }
        """,
        Output("submit_button", "n_clicks", allow_duplicate=True),
        [Input("chat_panel", "hidden")],
        prevent_initial_call=True,
    )

    app.clientside_callback(
        """
        function(children) {
            window.requestAnimationFrame(function() {
                const pane = document.getElementById('messages_container');
                if (pane) {
                    pane.scrollTop = pane.scrollHeight;
                }
            });
            return window.dash_clientside.no_update;
        }
        """,
        Output("messages_container", "data-scroll-trigger", allow_duplicate=True),
        [Input("messages_container", "children")],
        prevent_initial_call=True,
    )
