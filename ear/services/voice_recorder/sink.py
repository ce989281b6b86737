import asyncio
import threading
import time
from typing import TYPE_CHECKING

import discord

if TYPE_CHECKING:
    from ear.services.voice_recorder.manager import VoiceRecorderManagerService

from ear import pcm

# -------------------------------------------------------------- #
# Speaking Sink
# -------------------------------------------------------------- #

DEFAULT_RELEASE_SECONDS = 0.2


class SpeakingSink(discord.sinks.Sink):
    """
    Pycord sink that turns decoded voice packets into speaking events.

    write() runs on Pycord's decoder thread. It never touches session state; every packet
    and every derived speaking-start is handed to the event loop with
    call_soon_threadsafe. A participant is considered to have stopped speaking once no
    packet arrived for ``release_seconds``; that check runs as a task on the loop.
    """

    def __init__(
        self,
        manager: "VoiceRecorderManagerService",
        loop: asyncio.AbstractEventLoop,
        release_seconds: float = DEFAULT_RELEASE_SECONDS,
        *,
        filters=None,
    ):
        super().__init__(filters=filters)
        self.manager = manager
        self.loop = loop
        self.release_seconds = release_seconds
        self.finished = False

        # participant id -> monotonic time of the last packet (decoder thread writes)
        self._last_packet: dict[int, float] = {}
        self._lock = threading.Lock()

        self._monitor_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Pycord Sink Interface
    # -------------------------------------------------------------- #

    def init(self, vc):
        super().init(vc)
        self.loop.call_soon_threadsafe(self._start_monitor)

    @discord.sinks.Filters.container
    def write(self, data, user):
        if self.finished or user is None:
            return

        try:
            mono = pcm.downmix_to_mono(data, pcm.DECODER_CHANNELS)
        except (ValueError, TypeError) as e:
            self.loop.call_soon_threadsafe(self.manager.dispatch_audio_error, user, e)
            return

        with self._lock:
            started = user not in self._last_packet
            self._last_packet[user] = time.monotonic()

        self.loop.call_soon_threadsafe(self._deliver, user, mono, started)

    def cleanup(self):
        self.finished = True
        self.loop.call_soon_threadsafe(self._release_all)

    # -------------------------------------------------------------- #
    # Event Loop Side
    # -------------------------------------------------------------- #

    @property
    def channel(self):
        return self.vc.channel if self.vc else None

    def speaking_participants(self) -> list[int]:
        with self._lock:
            return list(self._last_packet)

    def _deliver(self, user_id: int, data: bytes, started: bool) -> None:
        if started:
            member = self._resolve_member(user_id)
            if member is not None and member.bot:
                return
            channel = self.channel
            self.manager.dispatch_speaking_start(
                user_id,
                channel.id if channel else None,
                member.display_name if member else None,
            )
        self.manager.feed_audio(user_id, data)

    def _resolve_member(self, user_id: int):
        channel = self.channel
        if channel is None or getattr(channel, "guild", None) is None:
            return None
        return channel.guild.get_member(user_id)

    def _start_monitor(self) -> None:
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = self.loop.create_task(self._monitor_silence())

    async def _monitor_silence(self) -> None:
        """Emit speaking-stop for every participant whose packets dried up."""
        interval = max(self.release_seconds / 4, 0.01)
        while not self.finished:
            await asyncio.sleep(interval)
            self._release_idle(time.monotonic())

    def _release_idle(self, now: float) -> None:
        with self._lock:
            idle = [
                user_id
                for user_id, last in self._last_packet.items()
                if now - last >= self.release_seconds
            ]
            for user_id in idle:
                del self._last_packet[user_id]

        for user_id in idle:
            self.manager.dispatch_speaking_stop(user_id)

    def _release_all(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None

        with self._lock:
            speaking = list(self._last_packet)
            self._last_packet.clear()

        for user_id in speaking:
            self.manager.dispatch_speaking_stop(user_id)
