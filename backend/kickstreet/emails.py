from typing import Dict, List, Optional, Tuple

import resend
from flask import current_app

from .otp import OTP_TTL_MINUTES
from .utils import normalize_email, safe_float

brand_colors = {
    "bg_primary": "#0b0b0b",
    "bg_secondary": "#151515",
    "border": "rgba(255, 255, 255, 0.12)",
    "text_primary": "#fafafa",
    "text_secondary": "rgba(250, 250, 250, 0.78)",
    "text_muted": "rgba(250, 250, 250, 0.5)",
    "accent": "#ff4d00",
}


def send_email_via_resend(payload: Dict[str, object]) -> Tuple[bool, Optional[str]]:
    configured_api_key = (current_app.config.get("RESEND_API_KEY") or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def build_code_email_html(otp: str, headline: str, intro: str) -> str:
    colors = brand_colors
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="color-scheme" content="dark" />
    <title>KickStreet</title>
  </head>
  <body style="margin:0;padding:0;background-color:{colors['bg_primary']};color:{colors['text_primary']};font-family:'Inter','Helvetica Neue',Arial,sans-serif;">
    <div style="padding:40px 16px;">
      <table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="max-width:520px;margin:0 auto;border-radius:20px;background:{colors['bg_secondary']};border:1px solid {colors['border']};">
        <tr>
          <td style="padding:40px 36px;">
            <p style="margin:0 0 12px 0;text-transform:uppercase;letter-spacing:0.4em;font-size:12px;color:{colors['accent']};">KickStreet</p>
            <h1 style="margin:0 0 14px 0;font-size:24px;line-height:1.25;">{headline}</h1>
            <p style="margin:0 0 28px 0;font-size:15px;line-height:1.7;color:{colors['text_secondary']};">{intro}</p>
            <div style="text-align:center;padding:24px;border:1px solid {colors['border']};border-radius:16px;">
              <span style="display:inline-block;font-size:34px;letter-spacing:0.4em;font-weight:700;color:{colors['accent']};">{otp}</span>
              <p style="margin:16px 0 0 0;font-size:13px;color:{colors['text_muted']};">Expires {OTP_TTL_MINUTES} minutes after this email was sent</p>
            </div>
            <p style="margin:28px 0 0 0;font-size:13px;color:{colors['text_muted']};">Didn&rsquo;t request this? You can safely ignore this email.</p>
          </td>
        </tr>
      </table>
    </div>
  </body>
</html>"""


def send_verification_email(recipient_email: str, otp: str):
    payload: Dict[str, object] = {
        "from": current_app.config["MAIL_SENDER"],
        "to": [recipient_email],
        "subject": "KickStreet - Your OTP for Verification",
        "html": build_code_email_html(
            otp,
            "Verify your KickStreet account",
            "Enter the code below to activate your account and start shopping.",
        ),
        "text": (
            f"Your KickStreet verification code is {otp}. "
            f"It expires in {OTP_TTL_MINUTES} minutes."
        ),
    }
    return send_email_via_resend(payload)


def send_password_reset_email(recipient_email: str, otp: str):
    payload: Dict[str, object] = {
        "from": current_app.config["MAIL_SENDER"],
        "to": [recipient_email],
        "subject": "KickStreet - Password Reset OTP",
        "html": build_code_email_html(
            otp,
            "Reset your KickStreet password",
            "Use the code below to choose a new password for your account.",
        ),
        "text": (
            f"Use this code {otp} to reset your KickStreet password within "
            f"{OTP_TTL_MINUTES} minutes."
        ),
    }
    return send_email_via_resend(payload)


def send_order_confirmation_email(order_document: Dict[str, object]):
    recipient = normalize_email(order_document.get("email"))
    if not recipient:
        return False, "Missing customer email for the order receipt."

    currency_code = str(order_document.get("currency") or "INR").upper()
    total_value = round(safe_float(order_document.get("amount_total"), 0.0), 2)
    order_identifier = str(order_document.get("_id") or "")
    item_lines = ", ".join(
        f"{item.get('name', 'Item')} (UK {item.get('size', '-')}) x{item.get('quantity', 1)}"
        for item in order_document.get("items") or []
    )
    payment_label = (
        "Cash on delivery"
        if order_document.get("payment_method") == "cod"
        else "Card"
    )
    text_body = (
        f"Thanks for shopping at KickStreet! Order {order_identifier}.\n"
        f"Items: {item_lines}.\n"
        f"Total: {currency_code} {total_value:.2f} ({payment_label}).\n\n"
        "KickStreet Team"
    )
    payload: Dict[str, object] = {
        "from": current_app.config["MAIL_SENDER"],
        "to": [recipient],
        "subject": "KickStreet - Order confirmed",
        "text": text_body,
    }
    return send_email_via_resend(payload)


def send_new_product_announcement(product_document: Dict[str, object], recipients: List[str]):
    if not recipients:
        return True, None

    name = str(product_document.get("name") or "New drop")
    price = round(safe_float(product_document.get("price"), 0.0), 2)
    payload: Dict[str, object] = {
        "from": current_app.config["MAIL_SENDER"],
        "to": [current_app.config["MAIL_SENDER"]],
        "bcc": recipients,
        "subject": f"NEW DROP: {name} | KICKSTREET",
        "text": (
            f"{name} just landed at KickStreet for {price:.2f}. "
            "Grab your size before it's gone."
        ),
    }
    return send_email_via_resend(payload)
