# max_express_bot/core/engine/texts.py
"""
User-facing bot copy.

``get_text(key, lang, **fmt)`` resolves a translation and applies
``str.format`` placeholders. Marketplace help texts are not here: they come
from configuration via ``MarketplaceCatalog``.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Translation:
    ru: str
    en: str

    def get(self, lang: str) -> str:
        return getattr(self, lang, None) or self.ru


TEXTS: dict[str, Translation] = {
    "menu": Translation(
        ru=(
            "Добро пожаловать в MaxExpress! 😊\n\n"
            "Выберите площадку, по которой нужна помощь:\n"
            "{marketplaces}"
        ),
        en=(
            "Welcome to MaxExpress! 😊\n\n"
            "Choose the marketplace you need help with:\n"
            "{marketplaces}"
        ),
    ),
    "menu_invalid": Translation(
        ru="Пожалуйста, выберите площадку кнопкой ниже.",
        en="Please choose a marketplace using the buttons below.",
    ),
    "q_query": Translation(
        ru="Отправьте ссылку на товар или опишите, что нужно найти на {marketplace}.",
        en="Send a product link or describe what you are looking for on {marketplace}.",
    ),
    "q_query_again": Translation(
        ru="Ожидаю ссылку или описание товара для {marketplace} текстовым сообщением.\n/cancel — отменить.",
        en="Waiting for a product link or description for {marketplace} as a text message.\n/cancel to cancel.",
    ),
    "query_received": Translation(
        ru="Спасибо! Запрос по {marketplace} принят:\n«{query}»\n\nЧтобы выбрать другую площадку, нажмите /start.",
        en="Thank you! Your {marketplace} request is received:\n\"{query}\"\n\nPress /start to choose another marketplace.",
    ),
    "hint_idle": Translation(
        ru="Нажмите /start, чтобы выбрать площадку, или /help для списка команд.",
        en="Press /start to choose a marketplace or /help for the list of commands.",
    ),
    "hint_completed": Translation(
        ru="Ваш запрос по {marketplace} уже принят. Нажмите /start, чтобы начать заново.",
        en="Your {marketplace} request is already received. Press /start to begin again.",
    ),
    "cancelled": Translation(
        ru="Действие отменено. Нажмите /start, чтобы начать заново.",
        en="Cancelled. Press /start to begin again.",
    ),
    "reset_done": Translation(
        ru="Диалог сброшен. Нажмите /start, чтобы начать заново.",
        en="Conversation reset. Press /start to begin again.",
    ),
    "help": Translation(
        ru=(
            "Команды:\n"
            "/start — выбрать площадку (1688, Pinduoduo, Poizon, Taobao)\n"
            "/register — получить клиентский код\n"
            "/code — показать мой клиентский код\n"
            "/track <трек-код> — статус доставки\n"
            "/cancel — отменить текущее действие\n"
            "/reset — сбросить диалог"
        ),
        en=(
            "Commands:\n"
            "/start — choose a marketplace (1688, Pinduoduo, Poizon, Taobao)\n"
            "/register — get your client code\n"
            "/code — show my client code\n"
            "/track <code> — delivery status\n"
            "/cancel — cancel the current action\n"
            "/reset — reset the conversation"
        ),
    ),
    "help_placeholder": Translation(
        ru="Информация по этой площадке скоро появится.",
        en="Information about this marketplace is coming soon.",
    ),

    # Registration
    "q_first_name": Translation(
        ru="Пройдите быструю и лёгкую регистрацию, чтобы получить свой клиентский код!\n\nНапишите Ваше имя.",
        en="Complete a quick registration to get your client code!\n\nWhat is your first name?",
    ),
    "q_last_name": Translation(
        ru="Напишите Вашу фамилию.",
        en="What is your last name?",
    ),
    "q_phone": Translation(
        ru="Напишите Ваш номер телефона.\nПример: 996XXXXXXXXX",
        en="What is your phone number?\nExample: 996XXXXXXXXX",
    ),
    "err_first_name": Translation(
        ru="Неверный формат.\nВведите имя ещё раз.",
        en="Invalid format.\nPlease enter your first name again.",
    ),
    "err_last_name": Translation(
        ru="Неверный формат.\nВведите фамилию ещё раз.",
        en="Invalid format.\nPlease enter your last name again.",
    ),
    "err_phone": Translation(
        ru="Неверный формат.\nВведите номер телефона ещё раз.\nПример: 996XXXXXXXXX",
        en="Invalid format.\nPlease enter your phone number again.\nExample: 996XXXXXXXXX",
    ),
    "registering": Translation(
        ru="Регистрирую…",
        en="Registering…",
    ),
    "registered": Translation(
        ru="Вы зарегистрированы!\nВаш клиентский код: {code}",
        en="You are registered!\nYour client code: {code}",
    ),
    "registration_failed": Translation(
        ru="Регистрация не завершена: сервис временно недоступен.\nПопробуйте позже: /register",
        en="Registration did not go through: the service is temporarily unavailable.\nPlease try again later: /register",
    ),
    "client_code": Translation(
        ru="Ваш клиентский код: {code}",
        en="Your client code: {code}",
    ),
    "client_not_registered": Translation(
        ru="Вы ещё не зарегистрированы. Нажмите /register, чтобы получить клиентский код.",
        en="You are not registered yet. Press /register to get your client code.",
    ),
    "client_code_lookup": Translation(
        ru="Ищу Ваш клиентский код…",
        en="Looking up your client code…",
    ),

    # Tracking
    "track_usage": Translation(
        ru="Укажите трек-код: /track <трек-код>",
        en="Specify a tracking code: /track <code>",
    ),
    "track_lookup": Translation(
        ru="Проверяю статус посылки {code}…",
        en="Checking parcel {code}…",
    ),
    "track_ready": Translation(
        ru="✅ Посылка {code} прибыла на склад и готова к выдаче.",
        en="✅ Parcel {code} has arrived and is ready for pickup.",
    ),
    "track_pending": Translation(
        ru="🚚 Посылка {code} ещё в пути.",
        en="🚚 Parcel {code} is still on its way.",
    ),

    "service_unavailable": Translation(
        ru="Сервис временно недоступен. Попробуйте позже.",
        en="The service is temporarily unavailable. Please try again later.",
    ),
}


def get_text(key: str, lang: str = "ru", **fmt) -> str:
    """
    Get a translated text string.

    Returns *key* itself if no translation exists.
    """
    translation = TEXTS.get(key)
    if translation is None:
        return key
    text = translation.get(lang)
    return text.format(**fmt) if fmt else text
