"""
messages.py — Canned user-facing texts and the outbound messages built from them.

Every failure the user can see is one of the calm, non-technical strings below;
upstream error codes and stack traces never reach a chat.
Trigger phrases and links come from Settings so operators can change them.
"""
from __future__ import annotations

from urllib.parse import quote

from fortunebot.config import Settings
from fortunebot.conversation.schemas import QuickReplyItem, TextMessage

# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

PROFILE_TEMPLATE = (
    "①お名前：\n"
    "②生年月日（例：1990/01/01）：\n"
    "③生まれた時間（任意）：\n"
    "④MBTI（任意）：\n"
    "⑤性別："
)

WELCOME_TEXT = (
    "友だち追加ありがとうございます🌙\n"
    "プロの占い師が監修した自己分析をお届けします。\n\n"
    "下の形式をコピーして、わかる範囲でご記入のうえ送信してください。\n\n"
    + PROFILE_TEMPLATE
)

FIELD_DISPLAY_NAMES: dict[str, str] = {
    "name": "①お名前",
    "birthdate": "②生年月日",
    "birthdate_format": "②生年月日の形式（例：1990/01/01）",
    "gender": "⑤性別",
}

GUIDANCE_HEADER = "📝 診断にはあと少し情報が必要です。次の項目をご記入ください。"

UNLOCK_HINT = "\n\n🔓 さらに深い「ボーナス診断」もご用意しています。下のボタンからどうぞ。"

CONCERN_PROMPT_TEXT = (
    "✨ ボーナス診断では、いまのお悩みに合わせてメッセージをお届けします。\n"
    "恋愛・仕事・人間関係など、気になっていることを自由に一通で送ってください。"
)

CLOSING_HINT = "\n\n💌 診断はここまでです。よろしければ下のボタンから結果をシェアしてください。"

CLOSING_TEXT = (
    "最後までご利用いただきありがとうございました🌸\n"
    "この診断をお友だちにも紹介していただけるとうれしいです。"
)

REMINDER_TEXT = (
    "🔮 ボーナス診断の準備ができています。\n"
    "下のボタンを押すと、いまのお悩みに合わせた診断を受け取れます。"
)

OUT_OF_CREDITS_TEXT = (
    "ご利用いただける診断回数が残っていません。\n"
    "追加のご購入はこちらからお手続きいただけます。"
)

APOLOGY_TEXT = (
    "申し訳ありません、ただいま診断を作成できませんでした。\n"
    "少し時間をおいて、もう一度お送りください。"
)

SYSTEM_ERROR_TEXT = "システムエラーが発生しました。時間をおいて再度お試しください。"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def welcome_message() -> TextMessage:
    return TextMessage(text=WELCOME_TEXT)


def guidance_message(problems: list[str]) -> TextMessage:
    lines = [GUIDANCE_HEADER, ""]
    lines.extend(f"・{FIELD_DISPLAY_NAMES.get(p, p)}" for p in problems)
    lines.extend(["", PROFILE_TEMPLATE])
    return TextMessage(text="\n".join(lines))


def profile_reading_message(reading: str, settings: Settings) -> TextMessage:
    return TextMessage(
        text=reading + UNLOCK_HINT,
        quick_reply=[QuickReplyItem(type="message", label="ボーナス診断", text=settings.unlock_trigger)],
    )


def reminder_message(settings: Settings) -> TextMessage:
    return TextMessage(
        text=REMINDER_TEXT,
        quick_reply=[QuickReplyItem(type="message", label="ボーナス診断", text=settings.unlock_trigger)],
    )


def concern_prompt_message() -> TextMessage:
    return TextMessage(text=CONCERN_PROMPT_TEXT)


def bonus_reading_message(reading: str, settings: Settings) -> TextMessage:
    return TextMessage(
        text=reading + CLOSING_HINT,
        quick_reply=[QuickReplyItem(type="message", label="シェアする", text=settings.closing_trigger)],
    )


def closing_message(settings: Settings) -> TextMessage:
    share_text = quote(f"プロの占い師が監修した自己分析 {settings.share_url}")
    return TextMessage(
        text=CLOSING_TEXT,
        quick_reply=[
            QuickReplyItem(type="uri", label="LINEで送る", uri=f"https://line.me/R/share?text={share_text}"),
            QuickReplyItem(type="uri", label="Xでシェア", uri=f"https://twitter.com/intent/tweet?text={share_text}"),
            QuickReplyItem(type="uri", label="友だちに紹介", uri=settings.share_url),
        ],
    )


def out_of_credits_message(settings: Settings, user_id: str) -> TextMessage:
    # The payment provider echoes client_reference_id back in its completion webhook
    separator = "&" if "?" in settings.purchase_url else "?"
    purchase_uri = f"{settings.purchase_url}{separator}client_reference_id={quote(user_id)}"
    return TextMessage(
        text=OUT_OF_CREDITS_TEXT,
        quick_reply=[QuickReplyItem(type="uri", label="購入する", uri=purchase_uri)],
    )


def apology_message() -> TextMessage:
    return TextMessage(text=APOLOGY_TEXT)


def system_error_message() -> TextMessage:
    return TextMessage(text=SYSTEM_ERROR_TEXT)
