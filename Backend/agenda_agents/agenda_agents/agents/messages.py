# agenda_agents/agents/messages.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo
from decimal import Decimal
from typing import Optional, Sequence

from ..models import AppointmentFact
from ..utils import format_money, to_decimal

DAILY_SUMMARY_TITLE = "📊 Daily summary"
WEEKLY_SUMMARY_TITLE = "📊 Weekly summary"
WEEKLY_PREVIEW_TITLE = "🌟 Week preview"
DAILY_AGENDA_TITLE = "📅 Today's agenda"
BIRTHDAY_TITLE = "🎂 Birthday!"
REMINDER_TITLE = "⏰ Upcoming appointment"


@dataclass(frozen=True)
class Tier:
    upper: Optional[Decimal]  # inclusive; None = unbounded
    template: str


DAILY_TIERS = (
    Tier(Decimal("1000"), "{patients} {money} today. Every step counts! 💪"),
    Tier(Decimal("5000"), "Great! {patients} {money} today. Keep it up! 🚀"),
    Tier(Decimal("10000"), "Excellent! {patients} {money} today. You're on fire! 🔥"),
    Tier(Decimal("15000"), "Spectacular! {patients} {money} in a single day. You're amazing! ⭐️"),
    Tier(Decimal("20000"), "Fantastic! {patients} {money} today. Your success inspires! 🌟"),
    Tier(Decimal("25000"), "Extraordinary! {patients} {money} in a single day. You set the bar! 👑"),
    Tier(None, "Simply INCREDIBLE! {patients} {money} today. Congratulations on an outstanding day! 🏆✨"),
)

WEEKLY_TIERS = (
    Tier(Decimal("5000"), "{patients} {money} this week. Keep going! 💪"),
    Tier(Decimal("15000"), "Great week! {patients} {money}. You're on the right track! 🚀"),
    Tier(Decimal("30000"), "Excellent week! {patients} {money}. Keep it up! 🔥"),
    Tier(Decimal("50000"), "Spectacular week! {patients} {money}. You're crushing it! ⭐️"),
    Tier(Decimal("70000"), "Fantastic week! {patients} {money}. Your success is inspiring! 🌟"),
    Tier(Decimal("100000"), "Extraordinary week! {patients} {money}. You set the bar! 👑"),
    Tier(None, "INCREDIBLE week! {patients} {money}. Congratulations on an outstanding week! 🏆✨"),
)


def select_tier(tiers: Sequence[Tier], revenue: Decimal) -> Tier:
    amount = to_decimal(revenue)
    for tier in tiers:
        if tier.upper is None or amount <= tier.upper:
            return tier
    return tiers[-1]


def _patient_text(count: int) -> str:
    return f"You saw {count} patient{'' if count == 1 else 's'} and earned"


def _render(tiers: Sequence[Tier], revenue: Decimal, patients: int) -> str:
    tier = select_tier(tiers, revenue)
    return tier.template.format(patients=_patient_text(max(0, int(patients))), money=format_money(revenue))


def daily_summary_message(revenue: Decimal, patients: int) -> str:
    return _render(DAILY_TIERS, revenue, patients)


def weekly_summary_message(revenue: Decimal, patients: int) -> str:
    return _render(WEEKLY_TIERS, revenue, patients)


def preview_message(count: int) -> str:
    if count <= 0:
        return "Your week is free! Take the time to plan and recharge. 🌟"
    if count == 1:
        return "You have 1 patient this week. Let's start strong! 💪"
    if count <= 10:
        return f"You have {count} patients this week. Let's start strong! 💪"
    if count <= 20:
        return f"Busy week! {count} patients are waiting for you. You've got this! 🚀"
    return f"Wow! {count} patients booked. Get ready for an amazing week! 🔥"


def agenda_message(appointments: Sequence[AppointmentFact], tz: tzinfo) -> str:
    if not appointments:
        return "No appointments today. Enjoy the free time! ☀️"
    first = appointments[0]
    n = len(appointments)
    head = f"You have {n} appointment{'' if n == 1 else 's'} today."
    return f"{head} First: {first.display_title} at {first.start.astimezone(tz).strftime('%H:%M')}"


def birthday_message(name: str, age: Optional[int]) -> str:
    if age is None or age <= 0:
        return f"Today is {name}'s birthday! Send your congratulations 🎉"
    return f"{name} turns {age} today! Send your congratulations 🎉"


def reminder_message(appointment: AppointmentFact, offset_minutes: int, tz: tzinfo) -> str:
    at = appointment.start.astimezone(tz).strftime("%H:%M")
    return f"{appointment.display_title} at {at} (in {int(offset_minutes)} min)"
