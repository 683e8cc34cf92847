"""
LanChat - Textual-based terminal user interface.

Anything typed is broadcast to every connected peer; lines starting with
a slash are commands (see HELP_TEXT).
"""

import time
from typing import Dict, List, NamedTuple, Optional, Set

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Vertical
from textual.widgets import Footer, Header, Input, Label, ListItem, ListView, RichLog

from .constants import APP_NAME, UI_MAX_MESSAGE_HISTORY, UI_TYPING_INDICATOR_TIMEOUT, UI_TYPING_SEND_INTERVAL
from .errors import CryptoError, PeerNotFoundError
from .peer import Peer
from .protocol import MessageKind
from .router import DisplayItem, MessageRouter
from .utils import format_timestamp, now_ms, short_id

HELP_TEXT = """Commands:
  /help                 Show this help
  /users                List peers on the network
  /dm <user> <message>  Send an encrypted private message
  /quit                 Leave the chat
Anything else is sent to everyone."""


class Command(NamedTuple):
    """A parsed slash command."""

    name: str
    args: List[str]


def parse_command(line: str) -> Optional[Command]:
    """
    Parse an input line.

    Returns:
        The command, or None if the line is an ordinary chat message
    """
    line = line.strip()
    if not line.startswith("/"):
        return None

    head, _, rest = line[1:].partition(" ")
    name = head.lower()
    rest = rest.strip()

    if name == "dm":
        args = rest.split(None, 1)
    else:
        args = rest.split() if rest else []
    return Command(name, args)


def render_item(item: DisplayItem) -> Text:
    """Render a display item; peer-supplied text is never parsed as markup."""
    stamp = (f"[{format_timestamp(item.timestamp)}] ", "dim")

    if item.kind is MessageKind.DIRECT:
        style = "bold magenta" if item.decrypted else "bold red"
        return Text.assemble(stamp, (f"[DM] {item.sender_name}", style), ": ", item.text)
    if item.kind is MessageKind.PRESENCE:
        return Text.assemble(stamp, (f"{item.sender_name} {item.text}", "italic cyan"))
    return Text.assemble(stamp, (item.sender_name, "bold yellow"), ": ", item.text)


class PeerList(ListView):
    """Peers on the network with session status indicators."""

    def refresh_peers(self, peers: List[Peer], connected: Set[str]) -> None:
        """Refresh the peer list."""
        self.clear()
        for peer in peers:
            icon = ("● ", "green") if peer.id in connected else ("○ ", "grey50")
            self.append(ListItem(Label(Text.assemble(icon, peer.username))))


class ChatApp(App):
    """Main LanChat application with Textual UI."""

    CSS = """
    Screen {
        background: #000000;
    }

    #main-container {
        layout: horizontal;
        height: 100%;
    }

    #peers-panel {
        width: 28;
        border-right: solid #8b0000;
        background: #0a0a0a;
    }

    #peers-title {
        text-style: bold;
        color: #ff4444;
        padding: 0 1;
    }

    #chat-panel {
        width: 1fr;
    }

    #chat-log {
        height: 1fr;
        border-bottom: solid #8b0000;
    }

    #typing-indicator {
        height: 1;
        color: #888888;
        padding: 0 1;
    }

    Input {
        background: #0a0a0a;
        border: solid #444444;
        color: #ffffff;
    }

    Input:focus {
        border: solid #8b0000;
    }
    """

    BINDINGS = [
        Binding("ctrl+u", "show_users", "Users"),
        Binding("ctrl+q", "quit", "Quit"),
    ]

    def __init__(self, router: MessageRouter):
        super().__init__()
        self.router = router
        self.title = APP_NAME
        self.sub_title = f"{router.username} ({short_id(router.peer_id)})"

        self.connected: Set[str] = set()
        self.typing: Dict[str, float] = {}
        self._last_typing_sent = 0.0

    def compose(self) -> ComposeResult:
        """Compose the main application layout."""
        yield Header()
        with Container(id="main-container"):
            with Vertical(id="peers-panel"):
                yield Label("Peers", id="peers-title")
                yield PeerList(id="peer-list")
            with Vertical(id="chat-panel"):
                yield RichLog(id="chat-log", wrap=True, max_lines=UI_MAX_MESSAGE_HISTORY)
                yield Label("", id="typing-indicator")
                yield Input(placeholder="Type a message or /help", id="message-input")
        yield Footer()

    def on_mount(self) -> None:
        """Hook the router up to the widgets."""
        self.router.on_display = self.show_item
        self.router.on_peer_found = self._peer_found
        self.router.on_peer_lost = self._peer_lost
        self.router.on_peer_connected = self._peer_connected
        self.router.on_peer_disconnected = self._peer_disconnected

        self.set_interval(1.0, self._expire_typing)
        self.show_notice(f"Welcome, {self.router.username}. Listening on port {self.router.listener.port}.")
        self.show_notice("Type /help for commands.")

        # The router starts before the UI mounts; catch up on what it already found
        for peer in self.router.peers():
            if self.router.connections.is_connected(peer.id):
                self.connected.add(peer.id)
            self.show_notice(f"{peer.username} joined the network")
        self._refresh_peers()

        self.query_one("#message-input", Input).focus()

    def show_item(self, item: DisplayItem) -> None:
        """Show a routed message."""
        if item.kind is MessageKind.TYPING:
            self.typing[item.sender_name] = time.monotonic() + UI_TYPING_INDICATOR_TIMEOUT
            self._update_typing()
            return

        self.typing.pop(item.sender_name, None)
        self._update_typing()
        self.query_one("#chat-log", RichLog).write(render_item(item))

    def show_notice(self, text: str, style: str = "dim cyan") -> None:
        """Show a local notice."""
        self.query_one("#chat-log", RichLog).write(Text(f"* {text}", style=style))

    def show_error(self, text: str) -> None:
        self.show_notice(text, style="bold red")

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        """Handle a submitted line."""
        line = event.value.strip()
        event.input.value = ""
        if not line:
            return

        command = parse_command(line)
        if command is None:
            self._send_broadcast(line)
        elif command.name == "help":
            self.show_notice(HELP_TEXT)
        elif command.name == "users":
            self.action_show_users()
        elif command.name == "dm":
            self._send_direct(command.args)
        elif command.name == "quit":
            self.action_quit()
        else:
            self.show_error(f"Unknown command /{command.name}. Type /help for commands.")

    def on_input_changed(self, event: Input.Changed) -> None:
        """Send throttled typing notifications while composing a chat message."""
        if not event.value or event.value.startswith("/"):
            return
        now = time.monotonic()
        if now - self._last_typing_sent >= UI_TYPING_SEND_INTERVAL:
            self._last_typing_sent = now
            self.router.send_typing()

    def action_show_users(self) -> None:
        """List peers in the chat log."""
        peers = self.router.peers()
        if not peers:
            self.show_notice("No peers discovered yet.")
            return
        self.show_notice(f"{len(peers)} peer(s) on the network:")
        for peer in peers:
            state = "connected" if peer.id in self.connected else "not connected"
            self.show_notice(f"  {peer.username} ({peer.address}:{peer.port}, {state})")

    def action_quit(self) -> None:
        """Quit the application."""
        self.exit()

    def _send_broadcast(self, text: str) -> None:
        sent = self.router.send_broadcast(text)
        self.query_one("#chat-log", RichLog).write(
            Text.assemble((f"[{format_timestamp(now_ms())}] ", "dim"), ("You", "bold cyan"), ": ", text)
        )
        if sent == 0:
            self.show_error("No connected peers; message was not delivered.")

    def _send_direct(self, args: List[str]) -> None:
        if len(args) < 2:
            self.show_error("Usage: /dm <user> <message>")
            return

        target, text = args
        try:
            delivered = self.router.send_direct(target, text)
        except PeerNotFoundError as e:
            self.show_error(e.message)
            return
        except CryptoError as e:
            self.show_error(f"Could not encrypt for {target}: {e.message}")
            return

        self.query_one("#chat-log", RichLog).write(
            Text.assemble(
                (f"[{format_timestamp(now_ms())}] ", "dim"), (f"[DM to {target}]", "bold magenta"), ": ", text
            )
        )
        if not delivered:
            self.show_error(f"{target} is not connected; message was not delivered.")

    def _peer_found(self, peer: Peer) -> None:
        self.show_notice(f"{peer.username} joined the network")
        self._refresh_peers()

    def _peer_lost(self, peer: Peer) -> None:
        self.connected.discard(peer.id)
        self.typing.pop(peer.username, None)
        self.show_notice(f"{peer.username} left the network")
        self._refresh_peers()

    def _peer_connected(self, peer_id: str, username: str) -> None:
        self.connected.add(peer_id)
        self._refresh_peers()

    def _peer_disconnected(self, peer_id: str, username: str) -> None:
        self.connected.discard(peer_id)
        self._refresh_peers()

    def _refresh_peers(self) -> None:
        self.query_one("#peer-list", PeerList).refresh_peers(self.router.peers(), self.connected)

    def _expire_typing(self) -> None:
        now = time.monotonic()
        expired = [name for name, until in self.typing.items() if until <= now]
        for name in expired:
            del self.typing[name]
        if expired:
            self._update_typing()

    def _update_typing(self) -> None:
        names = sorted(self.typing)
        if not names:
            text = ""
        elif len(names) == 1:
            text = f"{names[0]} is typing..."
        else:
            text = f"{', '.join(names)} are typing..."
        self.query_one("#typing-indicator", Label).update(Text(text))
