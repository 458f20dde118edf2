"""Balance top-up through a QRIS invoice."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .callbacks import Action
from .conversation import KIND_TOPUP_AMOUNT, Interaction, PendingAction
from .formatting import PRETTY_LINE, back_button, escape_html, format_rupiah, keyboard
from .payment import PaymentGatewayError
from .validation import parse_amount

if TYPE_CHECKING:
    from .handlers import BotApp

LOGGER = logging.getLogger(__name__)


class TopupHandlers:
    def __init__(self, app: "BotApp") -> None:
        self.app = app

    def _prompt_text(self) -> str:
        bounds = self.app.users.get_topup_settings()
        return (
            f"💳 <b>Automatic Balance Top-up</b>\n{PRETTY_LINE}\n"
            "Type and send the amount you want to top up.\n\n"
            "<b>Example:</b> <code>50000</code>\n\n"
            f"Minimum: <b>{format_rupiah(bounds['min_amount'])}</b>\n"
            f"Maximum: <b>{format_rupiah(bounds['max_amount'])}</b>"
        )

    def show_menu(self, interaction: Interaction) -> None:
        cancel = keyboard([back_button("⬅️ Cancel", Action.MAIN_MENU.encode())])
        message_id = self.app.render(interaction, self._prompt_text(), cancel)
        self.app.conversations.begin(
            interaction.user_id,
            KIND_TOPUP_AMOUNT,
            chat_id=interaction.chat_id,
            message_id=message_id,
        )

    def process_amount(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        """Turn the typed amount into an invoice and send its QR code.

        Out-of-range or unreadable input keeps the flow open and asks again;
        nothing is sent to the gateway.
        """
        app = self.app
        bounds = app.users.get_topup_settings()
        valid, amount = parse_amount(text, bounds["min_amount"], bounds["max_amount"])
        if not valid:
            app.render(
                interaction,
                "❌ <b>Invalid Amount</b>\n"
                f"The amount must be between {format_rupiah(bounds['min_amount'])} "
                f"and {format_rupiah(bounds['max_amount'])}.\n\n" + self._prompt_text(),
                keyboard([back_button("⬅️ Cancel", Action.MAIN_MENU.encode())]),
            )
            return

        app.conversations.complete(interaction.user_id)
        app.render(interaction, "⏳ Creating your payment invoice, please wait...")
        try:
            invoice = app.payment.create_invoice(amount, interaction.user_id, interaction.username)
            invoice_id = str(invoice["id"])
            app.log.record_invoice(invoice_id, interaction.user_id, amount)
            qr_image = app.payment.get_invoice_qr(invoice_id)
        except PaymentGatewayError as exc:
            LOGGER.error("top-up of %s for user %s failed: %s", amount, interaction.user_id, exc)
            app.render(
                interaction,
                f"❌ <b>An Error Occurred</b>\n\n{escape_html(exc)}",
                keyboard([back_button("⬅️ Back to Menu", Action.MAIN_MENU.encode())]),
            )
            return

        caption = (
            "✅ <b>Please Complete the Payment</b>\n\n"
            f"Invoice ID: <code>{escape_html(invoice_id)}</code>\n"
            f"Amount: <b>{format_rupiah(amount)}</b>\n\n"
            "<b>IMPORTANT:</b> your balance is credited automatically once the payment succeeds.\n\n"
            "<i>If your balance has not changed within 5 minutes, contact customer service.</i>"
        )
        app.delete_quietly(interaction.chat_id, interaction.message_id)
        app.bot.send_photo(
            interaction.chat_id,
            qr_image,
            caption=caption,
            reply_markup=keyboard([back_button("Done, back to menu", Action.MAIN_MENU.encode())]),
        )
        LOGGER.info("invoice %s for %s sent to user %s", invoice_id, amount, interaction.user_id)
