STRINGS = {
    "welcome": (
        "👋 Привет! Здесь можно сгенерировать портрет исторической личности.\n\n"
        "Войдите на сайт через Telegram и введите имя, например «Пётр I» или «Николай 2 (последний император)»."
    ),
    "subscribe_channel": "📢 Чтобы генерировать портреты, подпишитесь на наш канал.",
    "open_site": "🎨 Открыть сайт",
    "open_channel": "📢 Канал",
    "open_admin": "🔐 Открыть админку",
    "admin_link": "🔐 Ссылка на админ-панель (действует 1 час):\n{link}",
    "admin_denied": "⛔ У вас нет доступа к админ-панели.",
}


def get_string(key: str, **kwargs) -> str:
    text = STRINGS.get(key, key)
    return text.format(**kwargs) if kwargs else text
