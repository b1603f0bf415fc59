# notifications.py
import logging
import re

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from jinja2 import Environment

from billing.errors import ExternalServiceFailure

logger = logging.getLogger(__name__)

_html_env = Environment(autoescape=True, trim_blocks=True, lstrip_blocks=True)
_text_env = Environment(autoescape=False, trim_blocks=True, lstrip_blocks=True)

INVOICE_HTML = _html_env.from_string("""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="margin: 0;">{{ clinic_name }}</h1>
    <p>Hello {{ first_name }},</p>
    {% if message %}<p>{{ message }}</p>{% endif %}
    <p>You have a new invoice from {{ clinic_name }}.</p>
    <table style="width: 100%; border-collapse: collapse;">
      {% for item in line_items %}
      <tr>
        <td>{{ item.description }}{% if item.quantity > 1 %} (x{{ item.quantity }}){% endif %}</td>
        <td style="text-align: right;">{{ money(item.unit_price * item.quantity) }}</td>
      </tr>
      {% endfor %}
      <tr>
        <td><strong>Total Due</strong></td>
        <td style="text-align: right;"><strong>{{ amount }}</strong></td>
      </tr>
    </table>
    <p><strong>Due Date:</strong> {{ due_date }}</p>
    <p><a href="{{ payment_url }}">Pay Now</a></p>
    <p style="font-size: 12px; color: #666;">Invoice #{{ invoice_number }}</p>
  </div>
</body>
</html>
""")

INVOICE_TEXT = _text_env.from_string("""{{ clinic_name }} - Invoice

Hello {{ first_name }},

{% if message %}{{ message }}

{% endif %}You have a new invoice from {{ clinic_name }}.

Amount Due: {{ amount }}
Due Date: {{ due_date }}
Invoice #: {{ invoice_number }}

Pay now: {{ payment_url }}

If you have questions, please contact our office.""")


def format_money(minor_units):
    return f"${minor_units / 100:,.2f}"


def format_phone_number(phone):
    """E.164 for US numbers; anything else is passed through with a leading +."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 10:
        return "+1" + digits
    return "+" + digits


def render_invoice_email(invoice, account, clinic_name, payment_url, message=None):
    context = {
        "clinic_name": clinic_name,
        "first_name": account.first_name,
        "message": message,
        "line_items": invoice.line_items,
        "amount": format_money(invoice.amount),
        "due_date": invoice.due_date.strftime("%B %d, %Y") if invoice.due_date else "N/A",
        "payment_url": payment_url,
        "invoice_number": invoice.invoice_number or invoice.id,
        "money": format_money,
    }
    return INVOICE_HTML.render(**context), INVOICE_TEXT.render(**context)


class EmailSender:
    def send(self, to, subject, html, text):
        raise NotImplementedError


class SmsSender:
    def send(self, to, body):
        raise NotImplementedError


class SesEmailSender(EmailSender):
    def __init__(self, sender, region_name):
        self.sender = sender
        self.client = boto3.client("ses", region_name=region_name)

    def send(self, to, subject, html, text):
        try:
            response = self.client.send_email(
                Source=self.sender,
                Destination={"ToAddresses": [to]},
                Message={
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": {
                        "Html": {"Data": html, "Charset": "UTF-8"},
                        "Text": {"Data": text, "Charset": "UTF-8"},
                    },
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise ExternalServiceFailure(f"Email delivery failed: {e}") from e
        return response.get("MessageId")


class SnsSmsSender(SmsSender):
    def __init__(self, region_name):
        self.client = boto3.client("sns", region_name=region_name)

    def send(self, to, body):
        try:
            response = self.client.publish(PhoneNumber=to, Message=body)
        except (BotoCoreError, ClientError) as e:
            raise ExternalServiceFailure(f"SMS delivery failed: {e}") from e
        return response.get("MessageId")


def build_senders(config):
    email_sender = None
    if config.SES_SENDER:
        email_sender = SesEmailSender(config.SES_SENDER, config.AWS_REGION)
    else:
        logger.warning("SES_SENDER not set - direct invoice emails disabled")
    return email_sender, SnsSmsSender(config.AWS_REGION)
