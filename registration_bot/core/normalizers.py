"""
Funções para normalizar e validar dados de entrada do usuário.

Todas são puras: nunca levantam exceção por causa de entrada malformada,
devolvem None/False para que o fluxo possa pedir o dado novamente.
"""
import re
import unicodedata
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def strip_accents(text: str) -> str:
    """
    Remove acentos de uma string.
    """
    return "".join(
        ch for ch in unicodedata.normalize("NFD", text)
        if unicodedata.category(ch) != "Mn"
    )


def normalize_text(raw: str) -> str:
    """
    Texto sem acento, minúsculo e sem espaços nas pontas.
    Base para comparação de palavras-chave e apelidos de campos.
    """
    return strip_accents(raw or "").lower().strip()


def only_digits(raw: str) -> str:
    return re.sub(r"\D", "", raw or "")


def slug_key(raw: str) -> str:
    """
    Chave de comparação de slugs: "Congresso Jovem 2026" e "congresso-jovem-2026"
    viram "congressojovem2026".
    """
    return re.sub(r"[^a-z0-9]", "", normalize_text(raw))


def normalize_cpf(raw: str) -> str:
    """
    Remove tudo que não é dígito.

    Aceita formatos como:
    - "123.456.789-09" → "12345678909"
    - "12345678909" → "12345678909"
    """
    return only_digits(raw)


def _cpf_check_digit(digits: list, weight: int) -> int:
    # weight 10 cobre os 9 primeiros dígitos, weight 11 os 10 primeiros
    total = sum(d * (weight - i) for i, d in enumerate(digits[: weight - 1]))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def validate_cpf(raw: str) -> bool:
    """
    Valida CPF pelos dois dígitos verificadores.

    Rejeita tamanho diferente de 11 e sequências de dígitos iguais
    (ex: 111.111.111-11), que passariam no cálculo.
    """
    cpf = normalize_cpf(raw)
    if len(cpf) != 11:
        return False
    if len(set(cpf)) == 1:
        return False

    digits = [int(ch) for ch in cpf]
    return (
        _cpf_check_digit(digits, 10) == digits[9]
        and _cpf_check_digit(digits, 11) == digits[10]
    )


def normalize_phone(raw: str) -> str:
    """
    Normaliza telefone brasileiro para o formato usado como chave de sessão
    e como destinatário no provedor de mensagens.

    Exemplos:
        "(41) 99938-0969" → "5541999380969"
        "5541999380969" → "5541999380969"
    """
    digits = only_digits(raw)
    if digits.startswith("55"):
        return digits
    if len(digits) in (10, 11):
        return f"55{digits}"
    return digits


def normalize_date(raw: Optional[str]) -> Optional[str]:
    """
    Converte data em ISO (yyyy-mm-dd).

    Aceita "2001-03-15", "15/03/2001" e "15-03-2001".
    Retorna None para qualquer entrada que não seja uma data real.
    """
    if not raw:
        return None
    text = raw.strip()

    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        year, month, day = text.split("-")
    else:
        match = re.search(r"(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})", text)
        if not match:
            return None
        day, month, year = match.groups()

    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_quantity(raw: str, max_quantity: int = 50) -> Optional[int]:
    """
    Quantidade de participantes: apenas dígitos, maior que zero,
    limitada a max_quantity.
    """
    digits = only_digits(raw)
    if not digits:
        return None
    value = int(digits)
    if value <= 0:
        return None
    return min(value, max_quantity)


def parse_choice(raw: str, option_count: int, allow_zero: bool = False) -> Optional[int]:
    """
    Escolha numérica em uma lista de opções numeradas.

    Retorna o número escolhido (1..N, ou 0 quando allow_zero) ou None.
    """
    text = (raw or "").strip()
    if not re.fullmatch(r"\d{1,3}", text):
        return None
    choice = int(text)
    lower = 0 if allow_zero else 1
    if choice < lower or choice > option_count:
        return None
    return choice


def calculate_age(birthdate: Optional[date], today: Optional[date] = None) -> int:
    if not birthdate:
        return 0
    today = today or date.today()
    age = today.year - birthdate.year
    if (today.month, today.day) < (birthdate.month, birthdate.day):
        age -= 1
    return max(age, 0)


def format_brl(value) -> str:
    """Valor monetário no padrão brasileiro: 150.5 → "150,50"."""
    return f"{value:.2f}".replace(".", ",")


# Horário de Brasília (sem horário de verão desde 2019)
BRASILIA = timezone(timedelta(hours=-3))


def format_datetime_br(value: Optional[datetime]) -> str:
    """
    Data/hora UTC sem fuso → "dd/mm/aaaa HH:MM" no horário de Brasília.
    """
    if value is None:
        return "não informado"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(BRASILIA).strftime("%d/%m/%Y %H:%M")
