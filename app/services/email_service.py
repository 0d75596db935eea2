"""
AWS SES Email Service for sending one-time passcodes.

The code travels only by email; the API response carries the encrypted token.
"""

import logging
from typing import Optional
import boto3
from botocore.exceptions import ClientError, BotoCoreError
from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """
    Service for sending emails via AWS SES.
    """

    def __init__(self, ses_client=None):
        """Initialize AWS SES client (or use the one given)"""
        if ses_client is not None:
            self.ses_client = ses_client
            return

        session_kwargs = {
            'region_name': settings.AWS_REGION,
        }

        # Add credentials if provided (otherwise uses IAM role)
        if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
            session_kwargs['aws_access_key_id'] = settings.AWS_ACCESS_KEY_ID
            session_kwargs['aws_secret_access_key'] = settings.AWS_SECRET_ACCESS_KEY

        self.ses_client = boto3.client('ses', **session_kwargs)

    def send_otp_email(
        self,
        to_email: str,
        code: str,
        first_name: Optional[str] = None,
        expires_in_minutes: int = 2
    ) -> bool:
        """
        Send a one-time passcode to a fan.

        Args:
            to_email: Recipient email address
            code: 4-digit passcode
            first_name: Optional first name for the greeting
            expires_in_minutes: Lifetime stated in the email

        Returns:
            bool: True if email sent successfully, False otherwise
        """
        subject = f"Your code: {code}"

        html_body = self._build_otp_html(code, first_name, expires_in_minutes)
        text_body = self._build_otp_text(code, first_name, expires_in_minutes)

        try:
            response = self.ses_client.send_email(
                Source=f"{settings.AWS_SES_FROM_NAME} <{settings.AWS_SES_FROM_EMAIL}>",
                Destination={'ToAddresses': [to_email]},
                Message={
                    'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                    'Body': {
                        'Html': {'Data': html_body, 'Charset': 'UTF-8'},
                        'Text': {'Data': text_body, 'Charset': 'UTF-8'}
                    }
                }
            )

            message_id = response.get('MessageId')
            logger.info(f"OTP email sent to {to_email} (MessageId: {message_id})")
            return True

        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error']['Message']
            logger.error(f"AWS SES ClientError: {error_code} - {error_message}")
            return False

        except BotoCoreError as e:
            logger.error(f"AWS BotoCoreError: {str(e)}")
            return False

    def _build_otp_html(self, code: str, first_name: Optional[str], expires_in_minutes: int) -> str:
        greeting = f"Hi {first_name}," if first_name else "Hi there,"

        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Your code</title>
</head>
<body style="margin: 0; padding: 0; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #333333;">
    <table role="presentation" style="width: 100%; border-collapse: collapse;">
        <tr>
            <td align="center" style="padding: 40px 0;">
                <table role="presentation" style="width: 480px; border-collapse: collapse;">
                    <tr>
                        <td style="padding: 0 24px;">
                            <p style="margin: 0 0 20px 0; font-size: 16px; line-height: 1.5;">{greeting}</p>
                            <p style="margin: 0 0 20px 0; font-size: 16px; line-height: 1.5;">Here is your code:</p>
                            <div style="font-size: 36px; font-weight: 700; letter-spacing: 8px; font-family: 'Courier New', monospace; margin: 0 0 20px 0;">
                                {code}
                            </div>
                            <p style="margin: 0 0 20px 0; color: #666666; font-size: 14px; line-height: 1.5;">
                                This code expires in <strong>{expires_in_minutes} minutes</strong>.
                            </p>
                            <p style="margin: 0; color: #999999; font-size: 13px; line-height: 1.5;">
                                If you didn't ask for this code, you can safely ignore this email.
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
"""

    def _build_otp_text(self, code: str, first_name: Optional[str], expires_in_minutes: int) -> str:
        greeting = f"Hi {first_name}," if first_name else "Hi there,"

        return f"""{greeting}

Here is your code:

{code}

This code expires in {expires_in_minutes} minutes.

If you didn't ask for this code, you can safely ignore this email.
"""


# Singleton instance
email_service = EmailService()


def get_email_service() -> EmailService:
    """FastAPI dependency returning the shared email service."""
    return email_service
