import logging
from typing import Dict, Mapping, Optional

import boto3
from botocore.exceptions import ClientError

from gatekeeper.core.errors import PolicyLookupError

SDLC_TAG_KEY = "SDLC"


class AccountLookupError(PolicyLookupError):
    """
    Raised when an account alias cannot be resolved to an SDLC class.
    We prefer to refuse the submission than to guess which threshold applies.
    """
    pass


class AccountClassifier:
    """
    The 'Eyes' of the system for account facts.
    Resolves an account alias to its SDLC class (dev/qa/prod) from the account's
    SDLC tag in AWS Organizations, falling back to the configured account table.
    """
    def __init__(self, accounts: Optional[Mapping[str, str]] = None, orgs_client=None,
                 tag_key: str = SDLC_TAG_KEY, use_organizations: bool = True):
        # Dependency Injection allows us to pass 'Mock' clients during testing
        self.orgs = orgs_client
        self.accounts = {k.upper(): v.lower() for k, v in (accounts or {}).items()}
        self.tag_key = tag_key
        self.use_organizations = use_organizations
        self._sdlc_cache: Dict[str, str] = {}
        self._alias_cache: Optional[Dict[str, str]] = None
        self.logger = logging.getLogger("gatekeeper.adapter.orgs")

    def _client(self):
        if self.orgs is None:
            self.orgs = boto3.client("organizations")
        return self.orgs

    def _account_ids_by_name(self) -> Dict[str, str]:
        """Maps upper-cased account names to account ids. Loaded once."""
        if self._alias_cache is not None:
            return self._alias_cache

        names: Dict[str, str] = {}
        next_token = None
        while True:
            if next_token:
                resp = self._client().list_accounts(NextToken=next_token)
            else:
                resp = self._client().list_accounts()
            for account in resp.get("Accounts", []):
                names[account.get("Name", "").upper()] = account["Id"]
            next_token = resp.get("NextToken")
            if not next_token:
                break
        self._alias_cache = names
        return names

    def get_account_tags(self, account_id: str) -> Dict[str, str]:
        """
        Fetches AWS tags and transforms them into a lookup dictionary.
        """
        all_tags = []
        next_token = None
        try:
            while True:
                if next_token:
                    resp = self._client().list_tags_for_resource(ResourceId=account_id, NextToken=next_token)
                else:
                    resp = self._client().list_tags_for_resource(ResourceId=account_id)
                all_tags.extend(resp.get("Tags", []))
                next_token = resp.get("NextToken")
                if not next_token:
                    break
            return {tag["Key"]: tag["Value"] for tag in all_tags}
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == 'AccessDeniedException':
                return {}
            raise

    def _lookup_tag(self, alias: str) -> Optional[str]:
        try:
            account_id = self._account_ids_by_name().get(alias)
            if not account_id:
                return None
            return self.get_account_tags(account_id).get(self.tag_key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            self.logger.warning(f"Organizations lookup failed for {alias} ({code}), using configured accounts")
            return None

    def classify_sdlc(self, account_alias: str) -> str:
        alias = (account_alias or "").upper()
        if alias in self._sdlc_cache:
            return self._sdlc_cache[alias]

        sdlc = None
        if self.use_organizations:
            sdlc = self._lookup_tag(alias)
        if not sdlc:
            sdlc = self.accounts.get(alias)
        if not sdlc:
            raise AccountLookupError(f"Could not resolve an SDLC classification for account '{account_alias}'")

        self._sdlc_cache[alias] = sdlc.lower()
        return self._sdlc_cache[alias]
