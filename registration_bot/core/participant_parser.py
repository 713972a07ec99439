"""
Leitura tolerante dos dados de participante enviados em texto livre.

O usuário manda algo como:

    Nome: Maria da Silva
    CPF: 529.982.247-25
    Data de Nascimento: 15/03/2001

Cada linha vira um par chave/valor; a chave passa pela tabela de apelidos
para chegar ao campo canônico. Linhas sem separador são ignoradas.
"""
import re
from typing import Dict

from .normalizers import normalize_text

FIELD_ALIASES: Dict[str, tuple] = {
    "name": ("nome", "nome completo", "participante"),
    "cpf": ("cpf",),
    "birthdate": ("data de nascimento", "nascimento", "data nascimento", "data"),
    "gender": ("genero", "sexo"),
    "district": ("distrito",),
    "church": ("igreja",),
    "phone": ("telefone", "celular", "whatsapp"),
}

# Chaves de texto ("data de nascimento (dd/mm/aaaa)") perdem o que vier entre parênteses
_PARENTHESES = re.compile(r"\(.*?\)")


def split_key_value_lines(message: str) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in re.split(r"[\r\n]+", message or ""):
        line = line.strip()
        if not line:
            continue
        # ":" tem prioridade; "-" só quando não há ":" (datas e CPFs usam "-")
        if ":" in line:
            key, _, value = line.partition(":")
        elif " - " in line:
            key, _, value = line.partition(" - ")
        else:
            continue
        key = normalize_text(_PARENTHESES.sub("", key))
        value = value.strip()
        if key and value:
            fields[key] = value
    return fields


def parse_participant_message(message: str) -> Dict[str, str]:
    """
    Retorna um dict com todos os campos canônicos (vazios quando ausentes).
    """
    raw_fields = split_key_value_lines(message)
    parsed: Dict[str, str] = {}
    for field_name, aliases in FIELD_ALIASES.items():
        parsed[field_name] = next(
            (raw_fields[alias] for alias in aliases if raw_fields.get(alias)),
            "",
        )
    return parsed
