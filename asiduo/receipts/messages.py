"""Customer-facing WhatsApp message texts."""

from __future__ import annotations

from .models import Customer, ProgramProgress, ProgramResult, ProgramType, Purchase

GENERIC_FAILURE = (
    "Lo sentimos, hubo un problema al procesar tu comprobante. "
    "Por favor, intenta nuevamente con una imagen más clara."
)

RECEIVED = "📸 Recibimos tu comprobante. Lo estamos procesando, te avisaremos en unos minutos."

HELP = (
    "Para registrar un consumo, envía una foto del comprobante de pago. "
    "Para consultar tus puntos, envía la palabra 'puntos'."
)

POINTS_UNAVAILABLE = "Lo siento, no pudimos obtener la información de tus puntos en este momento."

_CARD_URL = "https://asiduo.club/{slug}/{phone}"


def card_url(merchant_slug: str, phone: str, template: str = _CARD_URL) -> str:
    return template.format(slug=merchant_slug, phone=phone.lstrip("+"))


def _progress_line(result: ProgramResult) -> str | None:
    name = result.program_name or result.program_id
    if result.error or not result.eligible:
        return None
    if result.program_type == ProgramType.POINTS:
        line = f"⭐ {name}: +{result.points_earned} puntos (total {result.total_points})"
    elif result.target:
        line = f"⭐ {name}: {result.progress}/{result.target}"
    else:
        line = f"⭐ {name}: {result.progress}"
    return line


def _reward_line(result: ProgramResult) -> str:
    name = result.program_name or result.program_id
    if result.program_type == ProgramType.POINTS and result.available_rewards:
        rewards = ", ".join(r.reward for r in result.available_rewards)
        return f"🎁 ¡Felicidades! Ya puedes canjear en {name}: {rewards}"
    return f"🎁 ¡Felicidades! Completaste {name}. Ya puedes canjear tu premio."


def format_confirmation(
    merchant_name: str,
    purchase: Purchase,
    purchase_count: int,
    results: list[ProgramResult],
    card_template: str = _CARD_URL,
) -> str:
    """Build the confirmation sent after a receipt is credited.

    A reward line is included only for programs that became redeemable with
    this purchase.
    """
    lines = [
        f"¡Gracias por tu compra en {merchant_name}!",
        "",
        f"💰 Monto: S/ {purchase.amount:.2f}",
    ]
    if purchase.address and purchase.address.upper() != "CAJA":
        lines.append(f"📍 Dirección: {purchase.address}")
    lines.append(f"🛒 Total de compras: {purchase_count}")

    progress = [line for line in map(_progress_line, results) if line]
    if progress:
        lines.append("")
        lines.extend(progress)

    rewards = [_reward_line(r) for r in results if r.became_redeemable]
    if rewards:
        lines.append("")
        lines.extend(rewards)

    lines.append("")
    lines.append(
        "Ver tu tarjeta de fidelidad: "
        + card_url(purchase.merchant_slug, purchase.customer_id, card_template)
    )
    return "\n".join(lines)


def is_points_request(text: str) -> bool:
    text = text.strip().lower()
    return "punto" in text or "point" in text


def _standing_line(progress: ProgramProgress, names: dict[str, str]) -> str:
    name = names.get(progress.program_id) or progress.program_id
    if progress.type == ProgramType.POINTS:
        return f"⭐ {name}: {progress.current_points} puntos"
    if progress.target:
        return f"⭐ {name}: {progress.current_count}/{progress.target}"
    return f"⭐ {name}: {progress.current_count}"


def format_points_summary(
    customer: Customer | None,
    merchant_names: dict[str, str],
    progress: dict[str, list[ProgramProgress]],
    program_names: dict[str, str] | None = None,
    card_template: str = _CARD_URL,
) -> str:
    """Build the reply to a ``puntos`` text message.

    Args:
        customer: The customer record, or None if they never sent a receipt.
        merchant_names: Display name per merchant slug.
        progress: Program progress per merchant slug.
        program_names: Display name per program id.
        card_template: Loyalty card URL template.
    """
    program_names = program_names or {}
    summaries = customer.summaries if customer else {}
    total = sum(s.purchase_count for s in summaries.values())
    lines = ["*Información de Puntos* 📊", ""]
    if customer:
        lines.append(f"*Cliente:* {customer.name}")
    lines.append(f"*Compras totales:* {total}")

    if not summaries:
        lines.append("")
        lines.append(
            "Aún no tienes puntos acumulados en ningún negocio. Envía una foto de tu "
            "comprobante de pago para comenzar a acumular puntos."
        )
        return "\n".join(lines)

    lines.append("")
    lines.append("*Puntos por negocio:*")
    for slug in sorted(summaries):
        summary = summaries[slug]
        lines.append("")
        lines.append(f"*{merchant_names.get(slug, slug)}*")
        lines.append(f"🛒 Compras: {summary.purchase_count}")
        lines.append(f"💰 Total gastado: S/ {summary.total_spent:.2f}")
        lines.extend(_standing_line(p, program_names) for p in progress.get(slug, []))
        lines.append("Ver tarjeta: " + card_url(slug, customer.id, card_template))
    return "\n".join(lines)
