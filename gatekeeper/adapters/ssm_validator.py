import logging
from typing import Callable, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from gatekeeper.core.errors import CollaboratorFailure

logger = logging.getLogger(__name__)

# describe_instance_information accepts at most 50 ids per InstanceIds filter
_BATCH_SIZE = 50


def _default_client_factory(account: str, region: str):
    return boto3.client("ssm", region_name=region)


class SsmResourceValidator:
    """
    Checks that target instances are registered with SSM and reports their ping status.
    The client factory receives the (account, region) environment so callers can plug
    in cross-account sessions; by default the ambient credentials are used.
    """
    def __init__(self, client_factory: Optional[Callable[[str, str], object]] = None):
        self._client_factory = client_factory or _default_client_factory

    def check_status(self, environment: Tuple[str, str], resource_ids: List[str]) -> Dict[str, str]:
        """Maps each instance id SSM knows about to its PingStatus. Unknown ids are absent."""
        if not resource_ids:
            return {}

        account, region = environment
        ssm = self._client_factory(account, region)
        statuses: Dict[str, str] = {}

        try:
            for start in range(0, len(resource_ids), _BATCH_SIZE):
                batch = resource_ids[start:start + _BATCH_SIZE]
                next_token = None
                while True:
                    kwargs = {"Filters": [{"Key": "InstanceIds", "Values": batch}]}
                    if next_token:
                        kwargs["NextToken"] = next_token
                    resp = ssm.describe_instance_information(**kwargs)
                    for info in resp.get("InstanceInformationList", []):
                        statuses[info["InstanceId"]] = info.get("PingStatus", "Unknown")
                    next_token = resp.get("NextToken")
                    if not next_token:
                        break
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error(f"SSM status check failed in {account}/{region}: {code}")
            raise CollaboratorFailure(f"Unable to check instance status with SSM: {code}")

        return statuses

    def validate_targets(self, environment: Tuple[str, str], resource_ids: List[str]) -> str:
        """
        Returns an empty string when every instance is Online in SSM, otherwise a
        message naming the instances that failed validation.
        """
        statuses = self.check_status(environment, resource_ids)
        invalid = [i for i in resource_ids if statuses.get(i) != "Online"]
        if not invalid:
            return ""
        return "The following instances are not properly configured with SSM: " + ", ".join(invalid)
