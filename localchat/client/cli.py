"""Terminal front end for the chat server.

Commands: /new [title], /list, /open <n>, /rename <title>, /delete, /retry, /quit.
Anything else is sent as a message; Ctrl+C while a reply is streaming stops it.
"""

import asyncio
import signal
import sys
from typing import Optional

from localchat.client.actions import ChatActions
from localchat.client.api import ChatAPI
from localchat.client.state import StreamState

HELP = "/new [title]  /list  /open <n>  /rename <title>  /delete  /retry  /quit"


class TerminalChat:

    def __init__(self, actions: ChatActions, out=sys.stdout):
        self.actions = actions
        self.out = out
        self._printed = 0

    def write(self, text: str = "", end: str = "\n"):
        self.out.write(text + end)
        self.out.flush()

    def show_notifications(self):
        for notification in self.actions.ui.active_notifications():
            self.write(f"[{notification.title}] {notification.message}")
            self.actions.ui.dismiss(notification.id)

    def show_chats(self):
        for index, chat in enumerate(self.actions.chats.chats, start=1):
            marker = "*" if chat.id == self.actions.chats.active_chat_id else " "
            self.write(f"{marker} {index}. {chat.title} ({chat.timestamp})")

    def show_messages(self):
        chat = self.actions.chats.active_chat
        if chat is None:
            return
        for message in chat.messages:
            flag = " [failed]" if message.error else " [stopped]" if message.stopped else ""
            self.write(f"{message.role}> {message.content}{flag}")

    async def send(self, content: str):
        chat = self.actions.chats.active_chat
        if chat is None:
            await self.actions.create_new_chat()
            chat = self.actions.chats.active_chat
            if chat is None:
                return

        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(self.actions.send_message(content))
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(self.actions.stop_stream()))
        self._printed = 0
        try:
            while not task.done():
                self._print_reply_progress()
                await asyncio.sleep(0.02)
            await task
        finally:
            loop.remove_signal_handler(signal.SIGINT)
        self._print_reply_progress()
        self.write()

    def _print_reply_progress(self):
        chat = self.actions.chats.active_chat
        if chat is None or not chat.messages:
            return
        reply = chat.messages[-1]
        if reply.role != "assistant":
            return
        if self._printed == 0 and reply.content:
            self.write("assistant> ", end="")
        self.write(reply.content[self._printed:], end="")
        self._printed = len(reply.content)

    async def handle(self, line: str) -> bool:
        command, _, argument = line.strip().partition(" ")
        chats = self.actions.chats

        if command == "/quit":
            return False
        if command == "/help":
            self.write(HELP)
        elif command == "/new":
            await self.actions.create_new_chat(argument or None)
        elif command == "/list":
            await self.actions.load_chats()
            self.show_chats()
        elif command == "/open":
            index = int(argument) - 1 if argument.isdigit() else -1
            if 0 <= index < len(chats.chats):
                await self.actions.open_chat(chats.chats[index].id)
                self.show_messages()
            else:
                self.write("Unknown chat number")
        elif command == "/rename" and chats.active_chat and argument:
            await self.actions.rename_chat(chats.active_chat.id, argument)
        elif command == "/delete" and chats.active_chat:
            await self.actions.delete_chat(chats.active_chat.id)
        elif command == "/retry":
            failed = self._last_failed_message_id()
            if failed is None:
                self.write("Nothing to retry")
            else:
                await self.actions.retry_message(failed)
                self.show_messages()
        elif line.strip():
            await self.send(line)
            if self.actions.ui.stream_state == StreamState.ERROR:
                self.write("(message failed, /retry to try again)")

        self.show_notifications()
        return True

    def _last_failed_message_id(self) -> Optional[str]:
        chat = self.actions.chats.active_chat
        if chat is None:
            return None
        failed = [m for m in chat.messages if m.role == "user" and m.error]
        return failed[-1].id if failed else None


async def run(base_url: Optional[str] = None):
    async with ChatAPI(base_url=base_url) as api:
        terminal = TerminalChat(ChatActions(api))
        terminal.write(HELP)
        await terminal.actions.load_chats()
        terminal.show_notifications()

        while True:
            try:
                line = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break
            if not await terminal.handle(line):
                break


def main() -> None:
    base_url = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        asyncio.run(run(base_url))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
