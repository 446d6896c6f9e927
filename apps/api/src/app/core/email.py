"""
Email Service using Resend

Sends the payment notifications produced by the billing jobs.
When RESEND_API_KEY is not configured the message is logged instead.
"""

import asyncio
import logging
import os
from datetime import date
from decimal import Decimal
from html import escape

import resend

logger = logging.getLogger(__name__)

resend.api_key = os.getenv("RESEND_API_KEY")

EMAIL_FROM = os.getenv("EMAIL_FROM", "Language School <financeiro@school.dev>")
PORTAL_URL = os.getenv("PORTAL_URL", "http://localhost:3000")
SCHOOL_NAME = os.getenv("SCHOOL_NAME", "Language School")

MONTH_NAMES = [
    "Janeiro",
    "Fevereiro",
    "Março",
    "Abril",
    "Maio",
    "Junho",
    "Julho",
    "Agosto",
    "Setembro",
    "Outubro",
    "Novembro",
    "Dezembro",
]


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
) -> bool:
    """
    Send an email using Resend.

    Args:
        to_email: Recipient email address
        subject: Email subject line
        html_content: HTML content of the email

    Returns:
        True if the email was sent (or logged in development)
    """
    if not resend.api_key:
        logger.warning("RESEND_API_KEY not set - logging email instead of sending")
        logger.info(f"EMAIL TO: {to_email} | SUBJECT: {subject}")
        return True

    try:
        params: resend.Emails.SendParams = {
            "from": EMAIL_FROM,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }

        # Resend's client is synchronous
        email = await asyncio.to_thread(resend.Emails.send, params)
        logger.info(f"Email sent successfully to {to_email}, id: {email['id']}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def format_brl(amount: Decimal | float | None) -> str:
    """Format an amount as Brazilian reais, e.g. R$ 1.234,50."""
    if amount is None:
        return "-"
    formatted = f"{Decimal(str(amount)):,.2f}"
    return "R$ " + formatted.replace(",", "X").replace(".", ",").replace("X", ".")


def _layout(title: str, body: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; color: #1f2937; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
            .header {{ color: #1a365d; margin-bottom: 24px; }}
            .summary-box {{ background-color: #f9fafb; border: 1px solid #e5e7eb; padding: 16px; border-radius: 8px; margin: 16px 0; }}
            .button {{ display: inline-block; background-color: #1a365d; color: white; padding: 14px 28px; text-decoration: none; border-radius: 8px; margin: 24px 0; }}
            .footer {{ margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1 class="header">{title}</h1>
            {body}
            <div class="footer">
                <p>Se o pagamento já foi realizado, desconsidere esta mensagem.</p>
                <p>{escape(SCHOOL_NAME)} - Financeiro</p>
            </div>
        </div>
    </body>
    </html>
    """


async def send_payment_reminder(
    to_email: str,
    student_name: str,
    year: int,
    month: int,
    due_date: date,
    amount: Decimal | None,
    boleto_url: str | None = None,
) -> bool:
    """Send a reminder that a monthly payment is coming due."""
    safe_name = escape(student_name)
    reference = f"{MONTH_NAMES[month - 1]}/{year}"
    days_left = (due_date - date.today()).days
    link = boleto_url or f"{PORTAL_URL}/aluno/financeiro"

    body = f"""
            <p>Olá {safe_name},</p>
            <p>A mensalidade de <strong>{reference}</strong> vence em
            <strong>{due_date.strftime("%d/%m/%Y")}</strong>{f" ({days_left} dias)" if days_left > 0 else ""}.</p>
            <div class="summary-box">
                <p><strong>Valor:</strong> {format_brl(amount)}</p>
                <p><strong>Vencimento:</strong> {due_date.strftime("%d/%m/%Y")}</p>
            </div>
            <a href="{escape(link)}" class="button">Ver boleto</a>
    """
    return await send_email(
        to_email=to_email,
        subject=f"Lembrete: mensalidade {reference} vence em {due_date.strftime('%d/%m')}",
        html_content=_layout("Lembrete de pagamento", body),
    )


async def send_payment_overdue_notice(
    to_email: str,
    student_name: str,
    year: int,
    month: int,
    due_date: date,
    amount: Decimal | None,
    boleto_url: str | None = None,
) -> bool:
    """Send a notice that a monthly payment is overdue."""
    safe_name = escape(student_name)
    reference = f"{MONTH_NAMES[month - 1]}/{year}"
    link = boleto_url or f"{PORTAL_URL}/aluno/financeiro"

    body = f"""
            <p>Olá {safe_name},</p>
            <p>Não identificamos o pagamento da mensalidade de <strong>{reference}</strong>,
            vencida em <strong>{due_date.strftime("%d/%m/%Y")}</strong>.</p>
            <div class="summary-box">
                <p><strong>Valor:</strong> {format_brl(amount)}</p>
                <p>Multa e juros podem ser aplicados conforme contrato.</p>
            </div>
            <a href="{escape(link)}" class="button">Regularizar pagamento</a>
    """
    return await send_email(
        to_email=to_email,
        subject=f"Mensalidade {reference} em atraso",
        html_content=_layout("Pagamento em atraso", body),
    )


async def send_enrollment_deactivated(
    to_email: str,
    student_name: str,
    year: int,
    month: int,
    days_overdue: int,
) -> bool:
    """Tell a student their enrollment was suspended for non-payment."""
    safe_name = escape(student_name)
    reference = f"{MONTH_NAMES[month - 1]}/{year}"

    body = f"""
            <p>Olá {safe_name},</p>
            <p>Sua matrícula foi suspensa automaticamente porque a mensalidade de
            <strong>{reference}</strong> está em atraso há {days_overdue} dias.</p>
            <div class="summary-box">
                <p>Para regularizar sua situação e reativar sua matrícula,
                entre em contato com a secretaria.</p>
            </div>
            <a href="{PORTAL_URL}/aluno/financeiro" class="button">Ver minhas mensalidades</a>
    """
    return await send_email(
        to_email=to_email,
        subject="Matrícula suspensa por inadimplência",
        html_content=_layout("Matrícula suspensa", body),
    )
