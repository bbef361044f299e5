# bot.py
import os
import sys
import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv
from telegram import Bot, Chat, ChatMember, Update, User
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    ChatMemberHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from engine import RoundConfig, RoundScheduler, RoundWorker

load_dotenv()
logger = logging.getLogger(__name__)

# ------- Defaults (overridable through the environment) -------
DEFAULT_MIN_COOLDOWN = 45.0   # seconds between two questions, at least
DEFAULT_MAX_COOLDOWN = 180.0  # and at most
DEFAULT_ROUND_TIME = 15.0     # seconds from question to scoring
LEADERBOARD_SIZE = 10
# ---------------------------------------------------------------

PRESENT_STATUSES = frozenset({ChatMember.MEMBER, ChatMember.ADMINISTRATOR, ChatMember.OWNER})


def is_present(member) -> bool:
    if member.status == ChatMember.RESTRICTED:
        return bool(getattr(member, "is_member", False))
    return member.status in PRESENT_STATUSES


@dataclass
class Settings:
    token: str
    channel: str
    nickname: Optional[str]
    rounds: RoundConfig


def _read_seconds(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


def load_settings(environ: Mapping[str, str] = os.environ) -> Settings:
    token = (environ.get("BOT_TOKEN") or "").strip()
    token_file = environ.get("BOT_TOKEN_FILE")
    if not token and token_file:
        try:
            with open(token_file, encoding="utf-8") as fh:
                token = fh.read().strip()
        except OSError as exc:
            raise ValueError(f"unable to read token file '{token_file}': {exc}") from exc
    if not token:
        raise ValueError("set BOT_TOKEN (or BOT_TOKEN_FILE) to your bot token")
    channel = (environ.get("TRIVIA_CHANNEL") or "").strip()
    if not channel:
        raise ValueError("set TRIVIA_CHANNEL to the chat id or @username of the channel to play in")
    rounds = RoundConfig(
        min_cooldown=_read_seconds(environ, "MIN_QUESTION_COOLDOWN", DEFAULT_MIN_COOLDOWN),
        max_cooldown=_read_seconds(environ, "MAX_QUESTION_COOLDOWN", DEFAULT_MAX_COOLDOWN),
        round_time=_read_seconds(environ, "ROUND_TIME", DEFAULT_ROUND_TIME),
    )
    nickname = (environ.get("BOT_NICKNAME") or "").strip() or None
    return Settings(token=token, channel=channel, nickname=nickname, rounds=rounds)


# ----------------- Chat adapter -----------------
class TelegramChatAdapter:
    """Outbound side of the chat transport: joining and sending."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    @property
    def identity(self) -> str:
        return self.bot.username

    async def join(self, channel: str) -> bool:
        # Bots are added to chats by people; all we can do is check we are there.
        try:
            member = await self.bot.get_chat_member(chat_id=channel, user_id=self.bot.id)
        except TelegramError as exc:
            logger.warning("unable to look up membership in %s: %s", channel, exc)
            return False
        return is_present(member)

    async def send_message(self, channel: str, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=channel, text=text)
        except TelegramError as exc:
            logger.warning("failed to send message to %s: %s", channel, exc)


# ----------------- Event interface -----------------
class TriviaBot:
    """
    Reacts to chat events for one channel.

    The round worker runs only while the bot itself is present in the
    channel: it is started by a join of our own identity and stopped by a
    leave of it or by logging out.
    """

    def __init__(self, chat, channel: str, nickname: Optional[str], rounds: RoundConfig,
                 rng=None, clock=time.monotonic) -> None:
        self.chat = chat
        self.channel = channel
        self.nickname = nickname
        self.scheduler = RoundScheduler(rounds, rng)
        self.worker = RoundWorker(self.scheduler, self._announce, clock)
        self._logged_out = asyncio.Event()

    def is_self(self, user: str) -> bool:
        return self.nickname is not None and user.lower() == self.nickname.lower()

    async def _announce(self, text: str) -> None:
        await self.chat.send_message(self.channel, text)

    async def on_login(self) -> None:
        logger.info("Logged in.")
        if await self.chat.join(self.channel):
            await self.on_join(self.channel, self.chat.identity)

    async def on_join(self, channel: str, user: str) -> None:
        if self.is_self(user):
            logger.info("joined %s", channel)
            self.worker.start()

    async def on_leave(self, channel: str, user: str) -> None:
        if self.is_self(user):
            logger.info("left %s", channel)
            await self.worker.stop()

    async def on_message(self, channel: str, user: str, text: str) -> bool:
        logger.debug('%s said in channel "%s", "%s"', user, channel, text)
        return self.scheduler.on_chat_message(user, text)

    async def on_logout(self) -> None:
        if self._logged_out.is_set():
            return
        await self.worker.stop()
        logger.info("Logged out.")
        self._logged_out.set()

    async def await_logout(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._logged_out.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


# ----------------- Telegram glue -----------------
def chat_matches(chat: Optional[Chat], channel: str) -> bool:
    if chat is None:
        return False
    if str(chat.id) == channel:
        return True
    return bool(chat.username) and f"@{chat.username}".lower() == channel.lower()


def nickname_of(user: User) -> str:
    return user.username or str(user.id)


def get_trivia(context: ContextTypes.DEFAULT_TYPE) -> TriviaBot:
    return context.bot_data["trivia"]


async def post_init(application: Application) -> None:
    trivia: TriviaBot = application.bot_data["trivia"]
    if trivia.nickname is None:
        trivia.nickname = application.bot.username
    await trivia.on_login()


async def post_stop(application: Application) -> None:
    trivia: TriviaBot = application.bot_data["trivia"]
    await trivia.on_logout()


async def membership_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    trivia = get_trivia(context)
    change = update.my_chat_member
    if change is None or not chat_matches(change.chat, trivia.channel):
        return
    was_present = is_present(change.old_chat_member)
    now_present = is_present(change.new_chat_member)
    user = nickname_of(change.new_chat_member.user)
    if now_present and not was_present:
        await trivia.on_join(trivia.channel, user)
    elif was_present and not now_present:
        await trivia.on_leave(trivia.channel, user)


# Plain text in the channel: possibly an answer
async def message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if update.message is None or update.message.text is None or update.effective_user is None:
        return
    trivia = get_trivia(context)
    if not chat_matches(update.effective_chat, trivia.channel):
        return
    await trivia.on_message(trivia.channel, nickname_of(update.effective_user), update.message.text)


HELP_TEXT = (
    "Every so often I ask an arithmetic question in this chat.\n"
    "Reply with just the number.\n"
    "The first correct answer earns +1, every wrong answer costs -1.\n"
    "Results are announced when the round time runs out.\n\n"
    "/score - your points\n"
    "/leaderboard - top players"
)


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text("Hi, I'm the math bot! Answer my questions with a number. /help for the rules.")


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(HELP_TEXT)


async def cmd_score(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user = update.effective_user
    points = get_trivia(context).scheduler.points_of(nickname_of(user))
    await update.message.reply_text(f"{user.first_name}, you have {points} point{'' if points == 1 else 's'}.")


async def cmd_leaderboard(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rows = get_trivia(context).scheduler.leaderboard(LEADERBOARD_SIZE)
    if not rows:
        await update.message.reply_text("No scores yet.")
        return
    text = "🏆 Leaderboard\n"
    for i, (nickname, points) in enumerate(rows, start=1):
        text += f"{i}. {nickname} — {points}\n"
    await update.message.reply_text(text)


def build_application(settings: Settings) -> Application:
    app = (
        ApplicationBuilder()
        .token(settings.token)
        .post_init(post_init)
        .post_stop(post_stop)
        .build()
    )
    app.bot_data["trivia"] = TriviaBot(
        TelegramChatAdapter(app.bot),
        settings.channel,
        settings.nickname,
        settings.rounds,
    )
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("score", cmd_score))
    app.add_handler(CommandHandler("leaderboard", cmd_leaderboard))
    app.add_handler(ChatMemberHandler(membership_handler, ChatMemberHandler.MY_CHAT_MEMBER))
    app.add_handler(MessageHandler(filters.TEXT & (~filters.COMMAND), message_handler))
    return app


# ----------------- main -----------------
def main() -> int:
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    try:
        settings = load_settings()
    except ValueError as exc:
        logger.error("%s", exc)
        return 1
    app = build_application(settings)
    logger.info("bot start polling...")
    app.run_polling(allowed_updates=Update.ALL_TYPES)
    return 0


if __name__ == "__main__":
    sys.exit(main())
