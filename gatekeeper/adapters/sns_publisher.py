import json
import logging

import boto3
from botocore.exceptions import ClientError

from gatekeeper.core.errors import CollaboratorFailure
from gatekeeper.models.request import AccessRequest
from gatekeeper.ui.json_logger import to_serializable_dict

logger = logging.getLogger(__name__)


class SnsEventPublisher:
    """Publishes pending access requests to an SNS topic for downstream subscribers."""

    def __init__(self, topic_arn: str, client=None, region_name: str = "us-east-1"):
        if not topic_arn or not topic_arn.startswith("arn:"):
            raise ValueError(f"A valid SNS topic ARN is required, got: {topic_arn}")
        self.topic_arn = topic_arn
        self.sns = client or boto3.client("sns", region_name=region_name)

    def publish(self, request: AccessRequest) -> str:
        payload = to_serializable_dict(request)
        try:
            resp = self.sns.publish(
                TopicArn=self.topic_arn,
                Subject=f"Gatekeeper: Access Requested ({request.id})",
                Message=json.dumps(payload),
                MessageAttributes={
                    "request_id": {"DataType": "String", "StringValue": str(request.id)},
                    "platform": {"DataType": "String", "StringValue": request.platform},
                },
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise CollaboratorFailure(f"Failed to publish access request {request.id} to SNS: {code}")

        message_id = resp.get("MessageId", "")
        logger.info(f"Published access request {request.id} to SNS (message {message_id})")
        return message_id
