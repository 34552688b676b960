import asyncio
import logging
import os
import sys
import time
from typing import Dict, List, Optional
import resource

import discord
from dotenv import load_dotenv

from chorus_core import (
    Agent,
    Channel,
    ChannelMessage,
    ChorusEngine,
    CompletionService,
    JsonRoster,
    RuntimeConfig,
)
from chorus_core.audit import build_logger


load_dotenv()

WEBHOOK_NAME = "Chorus"


class DiscordAdapter(discord.Client):
    """
    Discord I/O surface for the engine. Inbound messages are forwarded as
    ChannelMessage; agents speak through one webhook per channel so each can
    carry its own name and avatar.
    """

    def __init__(self, config: RuntimeConfig):
        intents = discord.Intents.none()
        intents.guilds = True
        intents.message_content = True
        intents.messages = True
        super().__init__(
            intents=intents,
            max_messages=200,
            member_cache_flags=discord.MemberCacheFlags.none(),
            chunk_guilds_at_startup=False,
        )
        self.config = config
        self.engine: Optional[ChorusEngine] = None
        self._webhooks: Dict[str, discord.Webhook] = {}
        self.logger = logging.getLogger("chorus.discord")

    def attach(self, engine: ChorusEngine) -> None:
        self.engine = engine

    async def on_ready(self) -> None:
        mem_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
        agents = len(self.engine.orchestrator.agents) if self.engine else 0
        print(
            f"[READY] Chorus online as {self.user} | guilds={len(self.guilds)} agents={agents} mem={mem_mb:.1f} MB",
            flush=True,
        )

    async def on_message(self, message: discord.Message) -> None:
        if self.engine is None or message.guild is None:
            return
        if self.user is not None and message.author.id == self.user.id:
            return
        try:
            await self.engine.handle_message(self._convert(message))
        except Exception as exc:
            print(f"[EVENT-ERROR] on_message: {exc}", flush=True)

    def _agent_by_name(self, name: str) -> Optional[Agent]:
        if self.engine is None:
            return None
        lowered = (name or "").lower()
        for agent in self.engine.orchestrator.agents.values():
            if agent.name.lower() == lowered:
                return agent
        return None

    def _convert(self, message: discord.Message) -> ChannelMessage:
        author_name = getattr(message.author, "display_name", None) or message.author.name
        author_id = str(message.author.id)
        is_agent = bool(message.webhook_id) or bool(message.author.bot)
        if message.webhook_id:
            # Webhook posts carry the webhook's id; map them back to the agent that spoke.
            agent = self._agent_by_name(author_name)
            if agent is not None:
                author_id = agent.id
        return ChannelMessage(
            channel_id=str(message.channel.id),
            author_id=author_id,
            author_name=author_name,
            text=message.content or "",
            author_is_agent=is_agent,
            guild_id=str(message.guild.id) if message.guild else None,
            message_id=str(message.id),
            timestamp=message.created_at.timestamp(),
        )

    async def _get_channel(self, channel_id: str) -> Optional[discord.TextChannel]:
        try:
            cid = int(channel_id)
        except (TypeError, ValueError):
            return None
        channel = self.get_channel(cid)
        if channel is None:
            try:
                channel = await self.fetch_channel(cid)
            except Exception as exc:
                print(f"[ACTION-ERROR] fetch_channel failed for {channel_id}: {exc}")
                return None
        return channel

    # ChatPlatform

    async def fetch_recent_messages(self, channel_id: str, limit: int) -> List[ChannelMessage]:
        channel = await self._get_channel(channel_id)
        if channel is None:
            raise LookupError(f"channel {channel_id} not found")
        history = [m async for m in channel.history(limit=limit)]
        history.reverse()
        return [self._convert(m) for m in history]

    async def _webhook_for(self, channel: discord.TextChannel) -> discord.Webhook:
        key = str(channel.id)
        cached = self._webhooks.get(key)
        if cached is not None:
            return cached
        hook = None
        for existing in await channel.webhooks():
            if existing.name == WEBHOOK_NAME and existing.token:
                hook = existing
                break
        if hook is None:
            hook = await channel.create_webhook(name=WEBHOOK_NAME, reason="Chorus agent voices")
        self._webhooks[key] = hook
        return hook

    async def send_as_agent(self, channel_id: str, agent: Agent, text: str) -> Optional[discord.WebhookMessage]:
        channel = await self._get_channel(channel_id)
        if channel is None:
            raise LookupError(f"channel {channel_id} not found")
        hook = await self._webhook_for(channel)
        try:
            return await hook.send(
                text,
                username=agent.name,
                avatar_url=agent.image_url or discord.utils.MISSING,
                wait=True,
            )
        except discord.NotFound:
            # Webhook was deleted out from under us; forget it so the next send recreates it.
            self._webhooks.pop(str(channel_id), None)
            raise

    async def list_active_channels(self, activity_window: float) -> List[Channel]:
        if self.engine is None:
            return []
        channels: List[Channel] = []
        for known in self.engine.activity.active_channels(time.time(), activity_window):
            resolved = self.get_channel(int(known.id)) if known.id.isdigit() else None
            name = getattr(resolved, "name", "") or known.name
            channels.append(Channel(id=known.id, guild_id=known.guild_id, name=name))
        return channels


async def main() -> None:
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable required.")

    config = RuntimeConfig.from_env()
    audit_logger = build_logger(config)
    roster = JsonRoster(config.roster_path)
    completion = CompletionService(config)
    adapter = DiscordAdapter(config)
    engine = ChorusEngine(config, adapter, completion, roster=roster, audit_logger=audit_logger)
    adapter.attach(engine)

    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            print(f"[TASK-ERROR] {task.get_name()}: {exc}", file=sys.stderr, flush=True)

    await engine.start()
    # start() is idempotent and hands back the running scheduler loop.
    engine.scheduler.start().add_done_callback(_log_task_failure)
    try:
        await adapter.start(token=token)
    finally:
        await engine.stop()
        if not adapter.is_closed():
            await adapter.close()


if __name__ == "__main__":
    asyncio.run(main())
