import logging
import os

from gatekeeper.adapters.aws_orgs import AccountClassifier
from gatekeeper.adapters.identity_store_adapter import IdentityStoreAdapter
from gatekeeper.adapters.notifier import RecordingDispatcher, SesNotificationDispatcher
from gatekeeper.adapters.sns_publisher import SnsEventPublisher
from gatekeeper.adapters.ssm_validator import SsmResourceValidator
from gatekeeper.adapters.state_store import DynamoRequestStore, InMemoryRequestStore, RequestStore
from gatekeeper.core.config import GatekeeperSettings
from gatekeeper.core.errors import ConfigurationError
from gatekeeper.core.filtering import ResultFilter
from gatekeeper.core.lifecycle import LifecycleEngine
from gatekeeper.core.live_grants import LiveGrantTracker
from gatekeeper.core.policy import ApprovalPolicy, PolicyEvaluator

logger = logging.getLogger(__name__)


def build_store(settings: GatekeeperSettings) -> RequestStore:
    backend = settings.store.backend.lower()
    if backend == "memory":
        logger.warning("Using the in-memory request store; requests will not survive this process.")
        return InMemoryRequestStore()
    if backend == "dynamodb":
        if not settings.store.table_name:
            raise ConfigurationError("store.table_name (or DYNAMODB_TABLE) is required for the dynamodb backend")
        logger.info(f"Initializing Request Store (Table: {settings.store.table_name})...")
        return DynamoRequestStore(settings.store.table_name, region_name=settings.store.region)
    raise ConfigurationError(f"Unknown store backend '{settings.store.backend}'")


def build_engine(settings: GatekeeperSettings, store: RequestStore = None, validator=None,
                 classifier=None, notifier=None, publisher=None) -> LifecycleEngine:
    """Wires the lifecycle engine from settings. Any collaborator can be injected."""
    store = store or build_store(settings)

    if notifier is None:
        notifier = SesNotificationDispatcher(settings.email) if settings.email.use_ses \
            else RecordingDispatcher(settings.email)
    if publisher is None and settings.sns_topic_arn:
        publisher = SnsEventPublisher(settings.sns_topic_arn)

    evaluator = PolicyEvaluator(ApprovalPolicy.from_settings(settings))
    tracker = LiveGrantTracker(store, lookback_hours=settings.live_window_hours,
                               user_id_prefix=settings.user_id_prefix)

    return LifecycleEngine(
        store=store,
        evaluator=evaluator,
        classifier=classifier or AccountClassifier(accounts=settings.accounts),
        validator=validator or SsmResourceValidator(),
        notifier=notifier,
        tracker=tracker,
        result_filter=ResultFilter(),
        publisher=publisher,
        user_id_prefix=settings.user_id_prefix,
        audit_log_dir=settings.audit_log_dir,
    )


def build_identity_provider(settings: GatekeeperSettings) -> IdentityStoreAdapter:
    identity_store_id = os.environ.get("IDENTITY_STORE_ID")
    if not identity_store_id:
        raise ConfigurationError("CRITICAL: IDENTITY_STORE_ID environment variable not set.")
    return IdentityStoreAdapter(identity_store_id, groups=settings.groups)
