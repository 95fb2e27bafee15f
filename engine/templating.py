"""
Template Resolver — renders {{...}} expressions in rule parameters.

Rule authors write Handlebars templates in parameter values, weight values
and messages, e.g. ``"Your balance is {{formatCentsAsDollars Customer.balance}}"``.
Rendering is done by pybars3 against the session state document.

This module owns *when* and *what* to render:
  - a value is rendered only if it is a string containing both "{{" and "}}"
  - confirmation / auto-confirm messages are excluded from the activation
    pass because they refer to input that has not been captured yet; the
    input handlers render them once the value exists
  - SetAttributes / UpdateStates carry a nested list of {key, value} items
    whose values are rendered individually

Helpers available to authors:
  ifeq, notempty, empty, switch/case, json, inc, paddedRandom,
  dateOfBirthHuman, dateLocalHuman, shortDateLocalHuman, dayLocalHuman,
  dayOfMonthLocalHuman, monthLocalHuman, timeLocalHuman, dateFormat,
  dateHuman, timeHuman, timeSlotHuman, characterSpeechSlow,
  characterSpeechFast, formatCentsAsDollars, formatBalanceCentsAsDollars
"""
from __future__ import annotations

import json
import random
import re
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from pybars import Compiler

from engine.errors import RuleConfigurationError
from models.schemas import Rule, RuleType
from state.document import StateDocument
from state.values import is_number, parse_float, to_number

logger = structlog.get_logger()

# Parameters rendered later by the rule-type handler, not at activation
EXCLUDED_PARAMS = frozenset({
    "confirmationMessage",
    "autoConfirmMessage",
    "setAttributes",
    "updateStates",
})

# Rule types whose params hold a list of {key, value} items
_NESTED_ITEM_PARAMS = {
    RuleType.SET_ATTRIBUTES.value: "setAttributes",
    RuleType.UPDATE_STATES.value: "updateStates",
}

_MAX_CACHED_TEMPLATES = 10000


def is_template(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value and "}}" in value


# ──────────────────────────────────────────────────────────────
#  Date formatting (moment-style format tokens)
# ──────────────────────────────────────────────────────────────

_MONTHS = ["January", "February", "March", "April", "May", "June", "July",
           "August", "September", "October", "November", "December"]
_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

_FORMAT_TOKENS = re.compile(
    r"\[[^\]]*\]|YYYY|YY|MMMM|MMM|MM|Mo|M|Do|DD|D|dddd|ddd|HH|H|hh|h|mm|m|ss|s|SSS|A|a|Z"
)


def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_moment(dt: datetime, fmt: str) -> str:
    """Format a datetime using moment.js style tokens (Do, MMMM, h:mma, ...)."""
    hour12 = dt.hour % 12 or 12

    def token(match: re.Match) -> str:
        t = match.group(0)
        if t.startswith("["):
            return t[1:-1]
        if t == "YYYY":
            return f"{dt.year:04d}"
        if t == "YY":
            return f"{dt.year % 100:02d}"
        if t == "MMMM":
            return _MONTHS[dt.month - 1]
        if t == "MMM":
            return _MONTHS[dt.month - 1][:3]
        if t == "MM":
            return f"{dt.month:02d}"
        if t == "Mo":
            return ordinal(dt.month)
        if t == "M":
            return str(dt.month)
        if t == "Do":
            return ordinal(dt.day)
        if t == "DD":
            return f"{dt.day:02d}"
        if t == "D":
            return str(dt.day)
        if t == "dddd":
            return _DAYS[dt.weekday()]
        if t == "ddd":
            return _DAYS[dt.weekday()][:3]
        if t == "HH":
            return f"{dt.hour:02d}"
        if t == "H":
            return str(dt.hour)
        if t == "hh":
            return f"{hour12:02d}"
        if t == "h":
            return str(hour12)
        if t == "mm":
            return f"{dt.minute:02d}"
        if t == "m":
            return str(dt.minute)
        if t == "ss":
            return f"{dt.second:02d}"
        if t == "s":
            return str(dt.second)
        if t == "SSS":
            return f"{dt.microsecond // 1000:03d}"
        if t == "A":
            return "AM" if dt.hour < 12 else "PM"
        if t == "a":
            return "am" if dt.hour < 12 else "pm"
        if t == "Z":
            offset = dt.utcoffset()
            if offset is None:
                return "+00:00"
            minutes = int(offset.total_seconds() // 60)
            sign = "+" if minutes >= 0 else "-"
            minutes = abs(minutes)
            return f"{sign}{minutes // 60:02d}:{minutes % 60:02d}"
        return t

    return _FORMAT_TOKENS.sub(token, fmt)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _blank(value: Any) -> bool:
    return value is None or value == ""


# ──────────────────────────────────────────────────────────────
#  Renderer
# ──────────────────────────────────────────────────────────────

class TemplateRenderer:
    """
    Renders Handlebars templates against state using pybars3.
    Compiled templates are cached by source text.
    """

    def __init__(self):
        self.compiler = Compiler()
        self._compiled_cache: dict[str, Callable] = {}
        self._switch_values: list[Any] = []
        self._helpers = self._build_helpers()

    def render(self, template: str, document: StateDocument | dict[str, Any]) -> str:
        data = document.data if isinstance(document, StateDocument) else document
        compiled = self._compiled_cache.get(template)
        if compiled is None:
            try:
                compiled = self.compiler.compile(template)
            except Exception as e:
                logger.error("template_compile_failed", template=template[:120], error=str(e))
                raise RuleConfigurationError(f"Failed to compile template: {template!r}: {e}") from e
            if len(self._compiled_cache) >= _MAX_CACHED_TEMPLATES:
                self._compiled_cache.clear()
            self._compiled_cache[template] = compiled
        try:
            return str(compiled(self._prepare_context(data), helpers=self._helpers))
        except RuleConfigurationError:
            raise
        except Exception as e:
            logger.error("template_render_failed", template=template[:120], error=str(e))
            raise RuleConfigurationError(f"Failed to render template: {template!r}: {e}") from e

    def render_if_template(self, value: Any, document: StateDocument | dict[str, Any]) -> Any:
        if is_template(value):
            return self.render(value, document)
        return value

    def _prepare_context(self, context: Any) -> Any:
        """Convert None to empty strings recursively; pybars renders None as 'None'."""
        if context is None:
            return ""
        if isinstance(context, dict):
            return {k: self._prepare_context(v) for k, v in context.items()}
        if isinstance(context, list):
            return [self._prepare_context(v) for v in context]
        return context

    # ── Helpers ───────────────────────────────────────────────

    def _build_helpers(self) -> dict[str, Callable]:
        switch_values = self._switch_values

        def _loose_equals(a: Any, b: Any) -> bool:
            if type(a) is type(b):
                return a == b
            if isinstance(a, (int, float, bool)) or isinstance(b, (int, float, bool)):
                return to_number(a) == to_number(b)
            return str(a) == str(b)

        def _is_empty(value: Any) -> bool:
            if isinstance(value, list):
                return len(value) == 0
            return not value and value != 0 or value is False

        def ifeq(this, options, a, b):
            if _loose_equals(a, b):
                return options["fn"](this)
            return options["inverse"](this)

        def notempty(this, options, a):
            if not _is_empty(a):
                return options["fn"](this)
            return options["inverse"](this)

        def empty(this, options, a):
            if _is_empty(a):
                return options["fn"](this)
            return options["inverse"](this)

        def switch(this, options, value):
            switch_values.append(value)
            try:
                return options["fn"](this)
            finally:
                switch_values.pop()

        def case(this, options, value):
            if switch_values and _loose_equals(value, switch_values[-1]):
                return options["fn"](this)
            return ""

        def to_json(this, value):
            return json.dumps(value)

        def inc(this, value):
            number = parse_float(value)
            if number != number:
                return "NaN"
            return str(int(number) + 1)

        def padded_random(this, low, high, length):
            value = random.randrange(int(to_number(low)), int(to_number(high)))
            return str(value).zfill(int(to_number(length)))

        def _local(value: Any, tz: Any, fmt: str):
            if _blank(value):
                return value
            dt = parse_datetime(value)
            if dt is None:
                return "Invalid date"
            if not _blank(tz):
                dt = dt.astimezone(ZoneInfo(str(tz)))
            return format_moment(dt, fmt)

        def date_of_birth_human(this, value):
            if _blank(value):
                return value
            try:
                dt = datetime.strptime(str(value), "%d%m%Y")
            except ValueError:
                return "Invalid date"
            return format_moment(dt, "Do of MMMM YYYY")

        def date_local_human(this, value, tz=None):
            return _local(value, tz, "Do of MMMM YYYY")

        def short_date_local_human(this, value, tz=None):
            return _local(value, tz, "Do of MMMM")

        def day_local_human(this, value, tz=None):
            return _local(value, tz, "dddd, Do of MMMM")

        def day_of_month_local_human(this, value, tz=None):
            return _local(value, tz, "Do")

        def month_local_human(this, value, tz=None):
            return _local(value, tz, "MMMM")

        def time_local_human(this, value, tz=None):
            return _local(value, tz, "h:mma")

        def date_format(this, value, fmt):
            return _local(value, None, str(fmt))

        def date_human(this, value):
            return _local(value, None, "Do of MMMM, YYYY")

        def time_human(this, value, *args):
            return _local(value, None, "h:mma")

        def time_slot_human(this, value, *args):
            if _blank(value):
                return value
            text = str(value).strip()
            for fmt in ("%I:%M %p", "%I:%M%p", "%H:%M"):
                try:
                    dt = datetime.strptime(text.upper(), fmt)
                    return format_moment(dt, "h:mm a")
                except ValueError:
                    continue
            return "Invalid date"

        def character_speech_slow(this, value):
            if _blank(value):
                return value
            return ", ".join(str(value))

        def character_speech_fast(this, value):
            if _blank(value):
                return value
            return " ".join(str(value))

        def format_cents_as_dollars(this, cents):
            if _blank(cents) or not is_number(cents):
                return "unknown dollars"
            return f"${to_number(cents) * 0.01:.2f}"

        def format_balance_cents_as_dollars(this, cents):
            if _blank(cents) or not is_number(cents):
                return "unknown dollars"
            amount = to_number(cents)
            if amount < 0:
                return f"${amount * -0.01:.2f} in credit"
            return f"${amount * 0.01:.2f}"

        return {
            "ifeq": ifeq,
            "notempty": notempty,
            "empty": empty,
            "switch": switch,
            "case": case,
            "json": to_json,
            "inc": inc,
            "paddedRandom": padded_random,
            "dateOfBirthHuman": date_of_birth_human,
            "dateLocalHuman": date_local_human,
            "shortDateLocalHuman": short_date_local_human,
            "dayLocalHuman": day_local_human,
            "dayOfMonthLocalHuman": day_of_month_local_human,
            "monthLocalHuman": month_local_human,
            "timeLocalHuman": time_local_human,
            "dateFormat": date_format,
            "dateHuman": date_human,
            "timeHuman": time_human,
            "timeSlotHuman": time_slot_human,
            "characterSpeechSlow": character_speech_slow,
            "characterSpeechFast": character_speech_fast,
            "formatCentsAsDollars": format_cents_as_dollars,
            "formatBalanceCentsAsDollars": format_balance_cents_as_dollars,
        }


# ──────────────────────────────────────────────────────────────
#  Rule templating at activation time
# ──────────────────────────────────────────────────────────────

def template_rule(rule: Rule, state: StateDocument, renderer: TemplateRenderer) -> Rule:
    """
    Return a copy of ``rule`` with its parameters rendered against state.
    Excluded parameters are left for the handler to render.
    """
    templated = rule.model_copy(deep=True)
    params = templated.params

    items_key = _NESTED_ITEM_PARAMS.get(templated.type)
    if items_key is not None:
        for item in params.get(items_key) or []:
            if not isinstance(item, dict) or _blank(item.get("key")) or _blank(item.get("value")):
                logger.warning("template_item_skipped", rule=rule.name, item=item)
                continue
            item["value"] = renderer.render_if_template(item["value"], state)

    for key, value in list(params.items()):
        if key in EXCLUDED_PARAMS:
            continue
        params[key] = renderer.render_if_template(value, state)

    return templated
