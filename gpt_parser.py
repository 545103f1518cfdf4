# gpt_parser.py
import json
import logging
import re

from openai import AsyncOpenAI, OpenAIError

from config import OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_MODEL
from errors import ValidationError
from models import Frequency, format_time_of_day

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a medication-reminder assistant.
If the text describes a medicine to take at a specific time of day, return JSON exactly like:
{"medicine":"...","time":"HH:MM","frequency":"daily|weekly|monthly","notes":"..."}
Use 24h time. Default frequency is "daily". Put dose and instructions in notes.
If time missing: {"error":"no_time"}
If not a medication reminder: {"error":"not_reminder"}"""

_client = None


def get_client():
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=OPENAI_API_KEY, base_url=OPENAI_BASE_URL)
    return _client


def extract_json(raw: str) -> dict:
    match = re.search(r"\{.*\}", raw or "", re.DOTALL)
    if not match:
        return {"error": "parse_failed"}
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return {"error": "parse_failed"}
    return data if isinstance(data, dict) else {"error": "parse_failed"}


def normalize(data: dict) -> dict:
    """Check the model's answer and coerce it into add() arguments."""
    if "error" in data:
        return data
    medicine = str(data.get("medicine") or "").strip()
    if not medicine:
        return {"error": "not_reminder"}
    try:
        time_of_day = format_time_of_day(str(data.get("time") or ""))
    except ValidationError:
        return {"error": "bad_time"}
    try:
        frequency = Frequency.parse(data.get("frequency") or "daily")
    except ValidationError:
        frequency = Frequency.DAILY
    return {
        "medicine_name": medicine,
        "time_of_day": time_of_day,
        "frequency": frequency.value,
        "notes": str(data.get("notes") or "").strip(),
    }


async def parse(text: str, client=None) -> dict:
    if client is None and not OPENAI_API_KEY:
        return {"error": "llm_disabled"}
    client = client or get_client()
    chat = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": text},
    ]
    try:
        resp = await client.chat.completions.create(
            model=OPENAI_MODEL, messages=chat, temperature=0, max_tokens=128
        )
    except OpenAIError as e:
        logger.error(f"OpenAI request error: {e}")
        return {"error": "request_error"}
    raw = (resp.choices[0].message.content or "").strip()
    return normalize(extract_json(raw))
