from app.config import Settings
from app.services.payments.adapters.base import ProviderAdapter, WebhookResult
from app.services.payments.adapters.card import CardAdapter
from app.services.payments.adapters.deferred import DeferredPayAdapter
from app.services.payments.adapters.qr_wallet_a import QrWalletAAdapter
from app.services.payments.adapters.qr_wallet_b import QrWalletBAdapter
from app.services.payments.errors import UnknownProvider
from app.services.payments.http import ProviderHttpClient
from app.services.payments.signer import (
    OpaAuthSigner,
    TimestampedHmacSigner,
    VerificationPolicy,
)

__all__ = [
    "AdapterRegistry",
    "CardAdapter",
    "DeferredPayAdapter",
    "ProviderAdapter",
    "QrWalletAAdapter",
    "QrWalletBAdapter",
    "WebhookResult",
]


class AdapterRegistry:
    def __init__(self, adapters: list[ProviderAdapter] | None = None):
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise UnknownProvider(provider)
        return adapter

    def providers(self) -> list[str]:
        return sorted(self._adapters)

    @classmethod
    def from_settings(
        cls, settings: Settings, policy: VerificationPolicy | None = None
    ) -> "AdapterRegistry":
        policy = policy or VerificationPolicy.from_setting(settings.webhook_verification)
        skew = settings.signature_skew_seconds

        def http(provider: str, base_url: str) -> ProviderHttpClient:
            return ProviderHttpClient(
                provider,
                base_url,
                timeout=settings.provider_timeout_seconds,
                max_attempts=settings.provider_max_attempts,
                backoff_seconds=settings.provider_backoff_seconds,
                total_budget_seconds=settings.provider_total_budget_seconds,
            )

        return cls(
            [
                CardAdapter(
                    http("card", settings.card_api_base),
                    policy,
                    secret_key=settings.card_secret_key,
                    signer=TimestampedHmacSigner(settings.card_webhook_secret or "", skew),
                ),
                QrWalletAAdapter(
                    http("qr_wallet_a", settings.qr_wallet_a_api_base),
                    policy,
                    signer=OpaAuthSigner(
                        settings.qr_wallet_a_api_key or "",
                        settings.qr_wallet_a_api_secret or "",
                        skew,
                    ),
                    merchant_id=settings.qr_wallet_a_merchant_id,
                    redirect_url=settings.qr_wallet_a_redirect_url,
                ),
                QrWalletBAdapter(
                    http("qr_wallet_b", settings.qr_wallet_b_api_base),
                    policy,
                    signer=TimestampedHmacSigner(settings.qr_wallet_b_webhook_secret or "", skew),
                    client_id=settings.qr_wallet_b_client_id,
                    client_secret=settings.qr_wallet_b_client_secret,
                    success_url=settings.qr_wallet_b_success_url,
                ),
                DeferredPayAdapter(
                    http("deferred", settings.deferred_api_base),
                    policy,
                    signer=TimestampedHmacSigner(settings.deferred_webhook_secret or "", skew),
                    secret_key=settings.deferred_secret_key,
                ),
            ]
        )
