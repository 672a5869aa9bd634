"""Notification templates for referral rewards."""

from __future__ import annotations

import html
from dataclasses import dataclass

SMS_OPT_OUT_FOOTER = "Reply STOP to opt out"


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def format_amount(amount_cents: int, currency: str) -> str:
    symbols = {
        "USD": "$",
        "CAD": "$",
        "EUR": "€",
        "GBP": "£",
    }
    symbol = symbols.get(currency.upper(), "")
    numeric = f"{amount_cents / 100:.2f}"
    return f"{symbol}{numeric}" if symbol else f"{numeric} {currency.upper()}"


def _greeting(name: str | None) -> str:
    return f"Hi {name}," if name else "Hi there,"


def render_gift_card_issued(
    *,
    reward_kind: str,
    contact_name: str | None,
    amount_cents: int,
    currency: str,
    gan: str,
    activation_url: str | None = None,
    pass_kit_url: str | None = None,
) -> RenderedTemplate:
    """Render the email sent when a friend bonus or referrer reward card is ready."""

    amount = format_amount(amount_cents, currency)
    if reward_kind == "referrer":
        subject = f"You earned a {amount} referral reward"
        intro = f"A friend you referred just finished their first visit, so we added {amount} to your gift card."
    else:
        subject = f"Your {amount} welcome gift card"
        intro = f"Thanks for booking with a friend's referral. Here is {amount} toward your visit."

    text_lines = [
        _greeting(contact_name),
        "",
        intro,
        "",
        f"Gift card number: {gan}",
    ]
    if activation_url:
        text_lines.append(f"View your card: {activation_url}")
    if pass_kit_url:
        text_lines.append(f"Add to Apple Wallet: {pass_kit_url}")
    text_lines.extend(["", "Show this card at checkout to redeem it.", "See you soon!"])

    links_html = ""
    if activation_url:
        links_html += f'<p><a href="{html.escape(activation_url)}">View your gift card</a></p>'
    if pass_kit_url:
        links_html += f'<p><a href="{html.escape(pass_kit_url)}">Add to Apple Wallet</a></p>'

    html_body = f"""<html>
  <body>
    <p>{html.escape(_greeting(contact_name))}</p>
    <p>{html.escape(intro)}</p>
    <p>Gift card number: <strong>{html.escape(gan)}</strong></p>
    {links_html}
    <p>Show this card at checkout to redeem it.</p>
  </body>
</html>"""

    return RenderedTemplate(subject=subject, text_body="\n".join(text_lines), html_body=html_body)


def render_referral_invite(
    *,
    contact_name: str | None,
    personal_code: str,
    referral_url: str,
    friend_reward_cents: int,
    currency: str,
) -> RenderedTemplate:
    """Render the email announcing a customer's own referral code."""

    amount = format_amount(friend_reward_cents, currency)
    subject = "Share your referral code and treat your friends"
    text_body = "\n".join(
        [
            _greeting(contact_name),
            "",
            f"Your personal referral code is {personal_code}.",
            f"Friends who book with it get {amount} off, and you earn a reward after their first visit.",
            "",
            f"Share your link: {referral_url}",
        ]
    )
    html_body = f"""<html>
  <body>
    <p>{html.escape(_greeting(contact_name))}</p>
    <p>Your personal referral code is <strong>{html.escape(personal_code)}</strong>.</p>
    <p>Friends who book with it get {html.escape(amount)} off, and you earn a reward after their first visit.</p>
    <p><a href="{html.escape(referral_url)}">Share your link</a></p>
  </body>
</html>"""
    return RenderedTemplate(subject=subject, text_body=text_body, html_body=html_body)


def render_referral_sms(template: str, *, contact_name: str | None, referral_url: str) -> str:
    """Fill ``[Name]`` / ``[referral_url]`` placeholders and append the opt-out footer."""

    body = template.replace("[Name]", contact_name or "there").replace("[referral_url]", referral_url)
    if SMS_OPT_OUT_FOOTER.lower() not in body.lower():
        body = f"{body.rstrip()} {SMS_OPT_OUT_FOOTER}"
    return body
