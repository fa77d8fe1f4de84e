"""Concrete implementations for the layout builder."""

from abc import ABC, abstractmethod
from typing import List, Optional

import dash_bootstrap_components as dbc
from dash import dcc, html
from dash.development.base_component import Component as DashComponent

from .models import USER, ChatRecord, Message, ModelRef

REQUIRED_IDS = {
    "url_location",
    "login_panel",
    "chat_panel",
    "email_input",
    "password_input",
    "name_input",
    "login_button",
    "register_button",
    "auth_feedback",
    "conversations_list",
    "new_conversation_button",
    "logout_button",
    "model_select",
    "messages_container",
    "input_textarea",
    "submit_button",
    "stream_interval",
    "status_indicator",
}


class Layout(ABC):
    """Interface for building the Dash component tree."""

    @abstractmethod
    def build_layout(self, models: List[ModelRef]) -> DashComponent:
        """Constructs the whole component tree. Must contain ``REQUIRED_IDS``."""
        pass

    @abstractmethod
    def build_messages(
        self, messages: List[Message], pending_id: Optional[str] = None
    ) -> List[DashComponent]:
        """Renders the conversation. ``pending_id`` is the AI placeholder
        still waiting for output, if any."""
        pass

    @abstractmethod
    def build_chat_list(self, chats: List[ChatRecord]) -> List[DashComponent]:
        pass

    def get_external_stylesheets(self) -> List[str]:
        return []


class Bootstrap(Layout):
    """Sidebar with the chat list, a model selector and the message pane."""

    def get_external_stylesheets(self) -> List[str]:
        return [dbc.themes.BOOTSTRAP]

    def build_layout(self, models: List[ModelRef]) -> DashComponent:
        return html.Div(
            [
                dcc.Location(id="url_location", refresh=False),
                dcc.Interval(id="stream_interval", interval=400, disabled=True),
                self.build_login_panel(),
                html.Div(
                    id="chat_panel",
                    className="d-flex vh-100",
                    hidden=True,
                    children=[self.build_sidebar(), self.build_chat_area(models)],
                ),
            ]
        )

    def build_login_panel(self) -> DashComponent:
        return html.Div(
            id="login_panel",
            hidden=True,
            children=dbc.Container(
                className="mt-5",
                style={"maxWidth": "420px"},
                children=[
                    html.H3("Sign in"),
                    dbc.Input(
                        id="email_input", type="email", placeholder="Email", className="mb-2"
                    ),
                    dbc.Input(
                        id="password_input",
                        type="password",
                        placeholder="Password",
                        className="mb-2",
                    ),
                    dbc.Input(
                        id="name_input",
                        placeholder="Name (only to create an account)",
                        className="mb-2",
                    ),
                    dbc.Button(
                        "Log in", id="login_button", color="primary", className="me-2"
                    ),
                    dbc.Button("Create account", id="register_button", color="secondary"),
                    html.Div(id="auth_feedback", className="text-danger mt-2"),
                ],
            ),
        )

    def build_sidebar(self) -> DashComponent:
        return html.Aside(
            className="d-flex flex-column p-3 bg-light border-end",
            style={"width": "260px"},
            children=[
                dbc.Button(
                    "+ New chat",
                    id="new_conversation_button",
                    color="primary",
                    className="w-100 mb-3",
                ),
                html.Div(id="conversations_list", className="flex-grow-1 overflow-auto"),
                dbc.Button(
                    "Log out", id="logout_button", color="link", className="mt-3"
                ),
            ],
        )

    def build_chat_area(self, models: List[ModelRef]) -> DashComponent:
        return html.Main(
            className="d-flex flex-column flex-grow-1",
            children=[
                html.Header(
                    className="d-flex justify-content-between align-items-center p-3 border-bottom",
                    children=[
                        html.H4("Polychat", className="m-0"),
                        dcc.Dropdown(
                            id="model_select",
                            options=[
                                {"label": m.display_name, "value": m.id} for m in models
                            ],
                            value=models[0].id if models else None,
                            clearable=False,
                            style={"minWidth": "260px"},
                        ),
                    ],
                ),
                html.Div(
                    id="messages_container",
                    className="flex-grow-1 p-3",
                    style={"overflowY": "auto"},
                ),
                html.Div(
                    "Thinking...",
                    id="status_indicator",
                    hidden=True,
                    className="px-3 text-muted",
                ),
                html.Footer(
                    className="p-3 border-top",
                    children=[
                        dbc.InputGroup(
                            [
                                dbc.Textarea(
                                    id="input_textarea",
                                    placeholder="Send a message...",
                                    rows=1,
                                ),
                                dbc.Button("Send", id="submit_button", color="primary"),
                            ]
                        )
                    ],
                ),
            ],
        )

    def build_messages(
        self, messages: List[Message], pending_id: Optional[str] = None
    ) -> List[DashComponent]:
        if not messages:
            return []
        return [self.build_message(msg, msg.id == pending_id) for msg in messages]

    def build_message(self, message: Message, pending: bool = False) -> DashComponent:
        style = {
            "padding": "10px",
            "borderRadius": "15px",
            "marginBottom": "10px",
            "maxWidth": "75%",
            "width": "fit-content",
        }
        if message.sender == USER:
            style["marginLeft"] = "auto"
            style["backgroundColor"] = "#dbeafe"
        elif message.is_error:
            style["marginRight"] = "auto"
            style["backgroundColor"] = "#fee2e2"
            style["border"] = "1px solid #fca5a5"
        else:
            style["marginRight"] = "auto"
            style["backgroundColor"] = "#f1f5f9"

        if pending and not message.text:
            body = html.Em("Thinking...")
        else:
            body = dcc.Markdown(message.text)
        return html.Div(
            [body, html.Small(message.timestamp.strftime("%H:%M"), className="text-muted")],
            style=style,
            className="chat-message error" if message.is_error else "chat-message",
        )

    def build_chat_list(self, chats: List[ChatRecord]) -> List[DashComponent]:
        if not chats:
            return [html.P("No chats yet", className="text-muted")]
        return [
            html.Div(
                chat.title or "Untitled chat",
                id={"type": "convo-item", "id": chat.id},
                n_clicks=0,
                style={
                    "cursor": "pointer",
                    "padding": "8px",
                    "borderBottom": "1px solid #eee",
                    "wordWrap": "break-word",
                },
            )
            for chat in chats
        ]
