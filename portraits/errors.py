class ProviderError(RuntimeError):
    """Ошибка внешнего AI-провайдера."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        error_type: str = "unknown",
        is_network_error: bool = False,
    ) -> None:
        super().__init__(f"{provider} error {status_code or error_type}: {message}")
        self.provider = provider
        self.status_code = status_code
        self.error_type = error_type
        self.is_network_error = is_network_error


class ProviderNotConfigured(RuntimeError):
    def __init__(self, provider: str, env_var: str) -> None:
        super().__init__(f"{env_var} is not set")
        self.provider = provider
        self.env_var = env_var


class ChannelNotConfigured(RuntimeError):
    pass


def classify_status(status_code: int | None) -> str:
    if status_code in (401, 403):
        return "auth"
    if status_code == 402:
        return "payment"
    if status_code == 429:
        return "rate_limit"
    if status_code == 400:
        return "bad_request"
    if status_code is None:
        return "network"
    return "unknown"


class GenerationError(Exception):
    status_code = 500
    code = "GENERATION_FAILED"

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def payload(self) -> dict:
        data = {"error": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class SubscriptionRequired(GenerationError):
    status_code = 403
    code = "SUBSCRIPTION_REQUIRED"

    def __init__(self) -> None:
        super().__init__("Для генерации необходимо подписаться на канал")


class DailyLimitReached(GenerationError):
    status_code = 429
    code = "DAILY_LIMIT_REACHED"

    def __init__(self, limit: int, used: int) -> None:
        super().__init__(f"Достигнут дневной лимит генераций ({limit} в день)")
        self.limit = limit
        self.used = used

    def payload(self) -> dict:
        data = super().payload()
        data.update({"limit": self.limit, "used": self.used, "remaining": 0})
        return data


class GenerationInProgress(GenerationError):
    status_code = 409
    code = "GENERATION_IN_PROGRESS"

    def __init__(self) -> None:
        super().__init__("Предыдущая генерация ещё не завершена")


class PersonNotFound(GenerationError):
    status_code = 404
    code = "PERSON_NOT_FOUND"

    def __init__(self, name: str, details: str | None = None) -> None:
        super().__init__(
            f"Историческая личность «{name}» не найдена",
            details or "Попробуйте указать полное имя или добавить уточнение в скобках",
        )
        self.name = name


class PromptGenerationFailed(GenerationError):
    code = "PROMPT_GENERATION_FAILED"


class ImageGenerationFailed(GenerationError):
    code = "IMAGE_GENERATION_FAILED"
