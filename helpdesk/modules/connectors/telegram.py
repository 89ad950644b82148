import hmac
from html import escape
from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup, LinkPreviewOptions
from telegram.constants import ChatAction, ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters
from helpdesk.core.config import settings
from helpdesk.core.errors import best_effort, ChannelSendError, ConnectorNotConfiguredError
from helpdesk.modules.connectors.base import BaseConnector, short_id
from helpdesk.modules.connectors.events import ConfirmationEvent, FeedbackEvent, StatusRequestEvent, parse_ticket_id
from helpdesk.modules.connectors.session import SessionState
from helpdesk.modules.tickets.schemas import Attachment, ChannelUserIn, InboundMessage

WELCOME = """Здравствуйте, {name}! 👋

Я бот технической поддержки. Опишите вашу проблему, и я постараюсь помочь.

<b>Что я умею:</b>
• Отвечать на вопросы по IT
• Помогать с настройкой VPN, почты, принтеров
• Создавать заявки в службу поддержки

<b>Команды:</b>
/help — Справка
/status — Статус ваших заявок

Просто напишите ваш вопрос! 💬"""

HELP = """<b>Справка по боту</b>

📝 <b>Как создать заявку:</b>
Напишите ваш вопрос или опишите проблему. Заявка будет создана автоматически.

📎 <b>Вложения:</b>
Можно прикрепить фото или документ, это ускорит разбор проблемы.

📋 <b>Команды:</b>
/start — Начать работу
/help — Эта справка
/status — Проверить статус заявок

⏰ Бот работает круглосуточно, операторы доступны в рабочее время (9:00-18:00)."""

UNKNOWN_COMMAND = "Неизвестная команда. Используйте /help для списка команд."

class TelegramConnector(BaseConnector):
    """Bot channel over python-telegram-bot (polling or webhook)."""

    name = "telegram"

    def __init__(self, token: str | None = None, mode: str | None = None, webhook_url: str | None = None,
                 webhook_secret: str | None = None, application: Application | None = None):
        super().__init__()
        self.token = token or settings.TELEGRAM_BOT_TOKEN
        self.mode = mode or settings.TELEGRAM_MODE
        self.webhook_url = webhook_url or settings.TELEGRAM_WEBHOOK_URL
        self.webhook_secret = webhook_secret or settings.TELEGRAM_WEBHOOK_SECRET
        self.app = application
        self.send_only = False

    @property
    def bot(self):
        return self.app.bot

    # ---- lifecycle ----
    def _build(self) -> Application:
        if self.app is None:
            if not self.token:
                raise ConnectorNotConfiguredError(self.name, "TELEGRAM_BOT_TOKEN not set")
            builder = Application.builder().token(self.token)
            if self.mode == "webhook":
                builder = builder.updater(None)  # updates arrive through /webhooks/telegram
            self.app = builder.build()
        return self.app

    def _register_handlers(self, app: Application) -> None:
        app.add_handler(CommandHandler("start", self.on_start_command))
        app.add_handler(CommandHandler("help", self.on_help_command))
        app.add_handler(CommandHandler("status", self.on_status_command))
        app.add_handler(MessageHandler(filters.COMMAND, self.on_unknown_command))
        app.add_handler(MessageHandler(
            ~filters.COMMAND & (filters.TEXT | filters.PHOTO | filters.Document.ALL | filters.VOICE | filters.VIDEO),
            self.on_message,
        ))
        app.add_handler(CallbackQueryHandler(self.on_callback_query))
        app.add_error_handler(self.on_error)

    async def _start(self, send_only: bool = False, **_) -> None:
        app = self._build()
        self.send_only = send_only
        if not send_only:
            self._register_handlers(app)
        await app.initialize()
        me = await app.bot.get_me()
        if not send_only:
            await app.start()
            if self.mode == "webhook":
                if not self.webhook_url or not self.webhook_secret:
                    raise ConnectorNotConfiguredError(
                        self.name, "TELEGRAM_WEBHOOK_URL and TELEGRAM_WEBHOOK_SECRET are required for webhook mode"
                    )
                await app.bot.set_webhook(
                    url=self.webhook_url, allowed_updates=Update.ALL_TYPES, secret_token=self.webhook_secret,
                )
            else:
                await app.updater.start_polling(allowed_updates=Update.ALL_TYPES)
        self.state = SessionState.CONNECTED
        self.log.info(f"Telegram bot @{me.username} ready (mode={'send-only' if send_only else self.mode})")

    async def _stop(self) -> None:
        app = self.app
        if app is None:
            return
        if app.updater and app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        if self.mode == "webhook" and not self.send_only:
            await best_effort(app.bot.delete_webhook(), "delete telegram webhook", self.log)
        await app.shutdown()

    def verify_webhook_secret(self, token: str | None) -> bool:
        if not self.webhook_secret or not token:
            return False
        return hmac.compare_digest(token.encode(), self.webhook_secret.encode())

    async def process_webhook_update(self, data: dict) -> None:
        if self.app is None or not self.running:
            raise ConnectorNotConfiguredError(self.name, "bot not started")
        update = Update.de_json(data, self.bot)
        await self.app.process_update(update)

    # ---- inbound ----
    async def on_start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        name = escape(user.full_name or user.username or "пользователь")
        await self.send_message(str(update.effective_chat.id), WELCOME.format(name=name))

    async def on_help_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.send_message(str(update.effective_chat.id), HELP)

    async def on_status_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat_id = str(update.effective_chat.id)
        await self.emit(StatusRequestEvent(source=self.name, source_id=chat_id, user=self._user(update.effective_user)))
        await best_effort(self.send_message(chat_id, "🔍 Проверяю статус ваших заявок..."), "status placeholder", self.log)

    async def on_unknown_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.send_message(str(update.effective_chat.id), UNKNOWN_COMMAND)

    async def on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        msg = update.effective_message
        user = update.effective_user
        if msg is None or user is None or user.is_bot:
            return
        chat_id = str(update.effective_chat.id)
        text = msg.text or msg.caption or ""
        inbound = InboundMessage(
            source=self.name,
            source_id=chat_id,
            user=self._user(user),
            subject=text[:100],
            body=text,
            attachments=await self._attachments(msg),
            raw=msg.to_dict(),
            timestamp=msg.date,
            meta={"message_id": msg.message_id},
        )
        if await self.emit_message(inbound):
            await best_effort(self.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING), "typing indicator", self.log)

    async def on_callback_query(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        chat_id = str(query.message.chat.id)
        action, _, rest = (query.data or "").partition(":")
        ticket_ref, _, value = rest.partition(":")
        try:
            if action == "rate" and value.isdigit() and 1 <= int(value) <= 5:
                await self.emit(FeedbackEvent(
                    source=self.name, source_id=chat_id, rating=int(value),
                    ticket_id=parse_ticket_id(ticket_ref), user_id=str(query.from_user.id),
                ))
                await best_effort(query.edit_message_text(f"Спасибо за оценку! Вы поставили {value} ⭐"), "rating ack", self.log)
            elif action == "confirm" and value in ("yes", "no"):
                await self.emit(ConfirmationEvent(
                    source=self.name, source_id=chat_id, confirmed=value == "yes",
                    ticket_id=parse_ticket_id(ticket_ref), user_id=str(query.from_user.id),
                ))
                ack = "✅ Отлично! Рады, что смогли помочь." if value == "yes" else "📝 Понял. Ваш запрос передан оператору."
                await best_effort(query.edit_message_text(ack), "confirmation ack", self.log)
            else:
                self.log.warning(f"Unknown callback data {query.data!r}")
        finally:
            await best_effort(query.answer(), "answer callback query", self.log)

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        self.log.error(f"Telegram handler error: {context.error}", exc_info=context.error)

    def _user(self, user) -> ChannelUserIn:
        return ChannelUserIn(
            id=str(user.id),
            name=user.full_name or user.username or "Unknown",
            username=user.username,
            language_code=user.language_code,
        )

    async def _attachments(self, msg) -> list[Attachment]:
        found = []
        if msg.photo:
            found.append(("photo", msg.photo[-1], None, None))  # largest size
        if msg.document:
            found.append(("document", msg.document, msg.document.mime_type, msg.document.file_name))
        if msg.voice:
            found.append(("voice", msg.voice, msg.voice.mime_type, None))
        if msg.video:
            found.append(("video", msg.video, msg.video.mime_type, getattr(msg.video, "file_name", None)))

        out = []
        for kind, media, mime, file_name in found:
            tg_file = await best_effort(media.get_file(), f"resolve {kind} file link", self.log)
            out.append(Attachment(
                type=kind,
                url=tg_file.file_path if tg_file else None,
                mime_type=mime,
                file_name=file_name,
            ))
        return out

    # ---- outbound ----
    async def _send(self, recipient_id: str, text: str, reply_markup=None, **_):
        try:
            sent = await self.bot.send_message(
                chat_id=recipient_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramError as e:
            raise ChannelSendError(self.name, f"send to {recipient_id} failed: {e}") from e
        self.log.debug(f"Message sent to {recipient_id} (message_id={sent.message_id})")
        return {"message_id": str(sent.message_id)}

    async def send_ticket_created(self, ticket):
        text = (
            f"✅ <b>Заявка создана</b>\n\n"
            f"📋 Номер: <code>{short_id(ticket)}</code>\n"
            f"📝 {escape(ticket.subject or '')}\n\n"
            f"Я обрабатываю ваш запрос. Пожалуйста, подождите..."
        )
        return await self.send_message(self.recipient_for(ticket), text)

    async def send_auto_response(self, ticket, text: str, kb_refs: list | None = None):
        body = f"💡 <b>Возможное решение:</b>\n\n{escape(text)}"
        if kb_refs:
            body += "\n\n📚 <i>Источник: База знаний</i>"
        body += "\n\n<b>Это помогло решить вашу проблему?</b>"
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("✅ Да, спасибо!", callback_data=f"confirm:{ticket.id}:yes"),
            InlineKeyboardButton("❌ Нет, нужна помощь", callback_data=f"confirm:{ticket.id}:no"),
        ]])
        return await self.send_message(self.recipient_for(ticket), body, reply_markup=keyboard)

    async def send_operator_response(self, ticket, text: str, operator_name: str | None = None):
        body = f"👨‍💻 <b>{escape(operator_name or 'Оператор')}:</b>\n\n{escape(text)}"
        return await self.send_message(self.recipient_for(ticket), body)

    async def send_ticket_resolved(self, ticket, resolution: str | None = None):
        body = f"✅ <b>Заявка решена</b>\n\n{escape(resolution or 'Ваша заявка решена.')}"
        body += "\n\n<b>Оцените качество поддержки:</b>"
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("⭐" * n, callback_data=f"rate:{ticket.id}:{n}") for n in range(1, 6)
        ]])
        return await self.send_message(self.recipient_for(ticket), body, reply_markup=keyboard)

    async def send_ticket_status(self, recipient_id: str, tickets: list):
        return await self.send_message(recipient_id, self.format_status_list(tickets, html=True))

    # ---- health ----
    async def _health(self) -> dict:
        if not self.running or self.app is None:
            return {"mode": self.mode}
        me = await self.bot.get_me()
        return {
            "status": "healthy",
            "bot": {"username": me.username, "id": me.id},
            "mode": "send-only" if self.send_only else self.mode,
        }
