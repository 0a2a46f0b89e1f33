"""Message intake — decide whether an inbound message starts an agent turn.

For each new message in a registered chat, in order:

1. Group chats pass the stranger gate or are dropped entirely (the Owner
   is alerted once per fresh detection, not once per message).
2. Only owner and family senders may invoke; friends and strangers are
   stored as passive context and never reach a sandbox.
3. Outside the main group the message must match the trigger pattern.
4. The agent runs with the effective context tier (sender tier capped by
   the group's tier) on every message since the chat was last answered.

The intake watermark advances after a message has been handled; an
exception leaves it in place so the message is retried on the next tick.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Awaitable, Callable
from xml.sax.saxutils import escape

from warden.authorization import format_stranger_alert
from warden.models import ContextTier, NewMessage, RegisteredGroup
from warden.utils import normalize_jid, phone_from_jid

if TYPE_CHECKING:
    from warden.authorization import PolicyEngine, StrangerGate
    from warden.groups import GroupRegistry
    from warden.state import RouterState
    from warden.store import MessageStore
    from warden.transport import Transport
    from warden.users import UserRegistry

logger = logging.getLogger(__name__)

GROUP_CHAT_SUFFIX = "@g.us"

# (group, prompt, chat_jid, effective tier) -> reply text or None
AgentRunner = Callable[[RegisteredGroup, str, str, ContextTier], Awaitable[str | None]]


def is_group_chat(chat_jid: str) -> bool:
    return chat_jid.endswith(GROUP_CHAT_SUFFIX)


def _xml(text: str) -> str:
    return escape(text, {'"': "&quot;"})


def format_prompt(messages: list[NewMessage]) -> str:
    lines = [
        f'<message sender="{_xml(m.sender_name)}" time="{m.timestamp}">{_xml(m.content)}</message>'
        for m in messages
    ]
    return "<messages>\n" + "\n".join(lines) + "\n</messages>"


class MessageIntake:
    """Turns stored inbound messages into authorized agent turns."""

    def __init__(
        self,
        *,
        groups: GroupRegistry,
        store: MessageStore,
        state: RouterState,
        policy: PolicyEngine,
        stranger_gate: StrangerGate,
        users: UserRegistry,
        transport: Transport,
        trigger: re.Pattern[str],
        run_agent: AgentRunner,
    ):
        self.groups = groups
        self.store = store
        self.state = state
        self.policy = policy
        self.stranger_gate = stranger_gate
        self.users = users
        self.transport = transport
        self.trigger = trigger
        self._run_agent = run_agent

    async def poll(self) -> int:
        """Process new messages in timestamp order. Returns how many were handled."""
        messages, _ = await self.store.get_new_messages(
            self.groups.jids(), self.state.last_timestamp
        )
        handled = 0
        for msg in messages:
            try:
                await self.process_message(msg)
            except Exception:
                logger.exception(
                    "Error processing message %s in %s; will retry", msg.id, msg.chat_jid
                )
                break
            self.state.advance(msg.timestamp)
            handled += 1
        return handled

    # ── Single message ───────────────────────────────────────────────────

    async def process_message(self, msg: NewMessage) -> bool:
        """Handle one message. Returns True if an agent turn was started."""
        group = self.groups.get(msg.chat_jid)
        if group is None:
            return False

        content = msg.content.strip()
        is_main = self.groups.is_main(group)
        group_chat = is_group_chat(msg.chat_jid)
        sender = normalize_jid(msg.sender)

        if group_chat and not await self._passes_stranger_gate(msg.chat_jid, group):
            return False

        has_trigger = is_main or bool(self.trigger.search(content))
        auth = self.policy.can_invoke(sender, group_chat)

        if not auth.can_invoke:
            logger.info(
                "Sender %s (%s) cannot invoke in %s%s; stored as passive context",
                sender,
                auth.tier.value,
                group.name,
                " despite trigger" if has_trigger else "",
            )
            return False

        if not has_trigger:
            logger.debug("Message from %s in %s has no trigger; passive context", sender, group.name)
            return False

        tier = self.policy.effective_context(auth.tier, group.context_tier)

        since = self.state.last_agent_timestamp.get(msg.chat_jid, "")
        pending = await self.store.get_messages_since(msg.chat_jid, since)
        if not pending:
            return False
        prompt = format_prompt(pending)

        logger.info(
            "Processing %d message(s) in %s (sender_tier=%s, context_tier=%s)",
            len(pending),
            group.name,
            auth.tier.value,
            tier.value,
        )
        response = await self._run_agent(group, prompt, msg.chat_jid, tier)
        if response:
            self.state.mark_answered(msg.chat_jid, msg.timestamp)
            await self.transport.send(msg.chat_jid, response)
        return True

    async def _passes_stranger_gate(self, chat_jid: str, group: RegisteredGroup) -> bool:
        try:
            participants = await self.transport.participants(chat_jid)
        except Exception:
            # Fail secure: no participant list, no processing.
            logger.exception("Could not fetch participants for %s; ignoring message", chat_jid)
            return False

        await self.store.update_group_participants(chat_jid, participants)
        check = self.stranger_gate.check(chat_jid, participants)
        if not check.has_strangers:
            if not check.from_cache:
                await self.store.clear_stranger_cache(chat_jid)
            return True

        logger.warning(
            "Strangers detected in %s (%d); ignoring thread", group.name, len(check.strangers)
        )
        if not check.from_cache:
            await self.store.set_stranger_cache(chat_jid, True, participants)
            await self._alert_owner(chat_jid, group, check.strangers)
        return False

    async def _alert_owner(self, chat_jid: str, group: RegisteredGroup, strangers: list[str]) -> None:
        owner = self.users.owner
        if owner is None:
            logger.warning("No owner registered; stranger alert for %s not sent", group.name)
            return
        names = {normalize_jid(k): v for k, v in (await self.store.get_sender_names(chat_jid)).items()}
        listed = [(names.get(jid, phone_from_jid(jid)), jid) for jid in strangers]
        try:
            await self.transport.send(owner.jid, format_stranger_alert(group.name, listed))
        except Exception:
            logger.exception("Failed to send stranger alert for %s", group.name)
            return
        logger.info("Owner notified of %d stranger(s) in %s", len(strangers), group.name)
