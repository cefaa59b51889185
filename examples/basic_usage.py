"""Basic usage examples for the Twitch Helix SDK."""

import asyncio

from twitchhelix import CredentialKind
from twitchhelix import HelixClient
from twitchhelix import HelixConfig
from twitchhelix import MOCK_BASE_URL
from twitchhelix import RateLimitExceededError
from twitchhelix import SubscriptionStatus
from twitchhelix import TransportBinding
from twitchhelix import configure_logging
from twitchhelix import load_config_from_env
from twitchhelix import load_credentials_from_env


async def lookup_users():
    """Look up users with credentials taken from the environment."""
    config = load_config_from_env()

    async with HelixClient(config, load_credentials_from_env(config)) as helix:
        users = await helix.get_users(logins=["twitchdev"])
        for user in users:
            print(f"{user.display_name} ({user.id}) created {user.created_at}")

        budget = helix.rate_limiter.budget
        print(f"Rate limit: {budget.remaining}/{budget.capacity} points left")


async def app_token_subscriptions():
    """Manage webhook subscriptions with an app token.

    With only a client id and secret the client fetches an app token on the
    first call that needs one.
    """
    config = HelixConfig(client_id="your_client_id", client_secret="your_client_secret")

    async with HelixClient(config) as helix:
        await helix.create_eventsub_subscription(
            "stream.online",
            {"broadcaster_user_id": "12826"},
            TransportBinding.webhook("https://example.com/eventsub", "a-secret-of-10-to-100-chars"),
            version="1",
        )

        async for subscription in helix.iter_eventsub_subscriptions(status=SubscriptionStatus.ENABLED):
            print(f"{subscription.id}: {subscription.type} v{subscription.version}")

        async for subscription in helix.iter_eventsub_subscriptions(
            status=SubscriptionStatus.WEBHOOK_CALLBACK_VERIFICATION_FAILED
        ):
            await helix.delete_eventsub_subscription(subscription.id)


async def raw_requests():
    """Call endpoints that have no typed helper."""
    config = HelixConfig(client_id="your_client_id", base_url=MOCK_BASE_URL)

    async with HelixClient(config, load_credentials_from_env(config)) as helix:
        try:
            colors = await helix.request(
                "GET",
                "/chat/color",
                params={"user_id": "12826"},
                credential_kind=CredentialKind.ANY,
                timeout=10.0,
            )
            print(colors)
        except RateLimitExceededError as e:
            print(f"Rate limited until {e.reset}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(lookup_users())
