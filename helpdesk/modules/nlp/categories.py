from dataclasses import dataclass

@dataclass(frozen=True)
class Category:
    code: str
    keywords: tuple[str, ...]
    auto_resolvable: bool

CATEGORIES: tuple[Category, ...] = (
    Category("access_vpn", ("vpn", "доступ", "пароль", "логин", "войти", "кіру", "құпиясөз"), True),
    Category("hardware", ("компьютер", "принтер", "монитор", "клавиатура", "мышь", "computer", "printer"), False),
    Category("software", ("программа", "установить", "обновить", "ошибка", "бағдарлама", "орнату"), True),
    Category("email", ("почта", "email", "outlook", "письмо", "хат"), True),
    Category("network", ("интернет", "сеть", "wifi", "медленно", "желі", "баяу"), False),
    Category("account", ("аккаунт", "учётная запись", "профиль", "есептік жазба"), True),
    Category("request_new", ("заказать", "новый", "нужен", "жаңа", "қажет"), False),
    Category("incident", ("сбой", "не работает", "упал", "авария", "жұмыс істемейді", "ақау"), False),
    Category("other", (), False),
)

BY_CODE: dict[str, Category] = {c.code: c for c in CATEGORIES}
FALLBACK_CATEGORY = "other"

PRIORITIES = ("critical", "high", "medium", "low")

def is_auto_resolvable(code: str) -> bool:
    cat = BY_CODE.get(code)
    return bool(cat and cat.auto_resolvable)
