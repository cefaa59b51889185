#!/usr/bin/env python3
"""
Example: Read chat over an EventSub WebSocket session.

This example shows how to:
1. Load a user token from the environment
2. Open an EventSub WebSocket session
3. Subscribe to chat messages once the session is welcomed
4. Keep the subscriptions alive across reconnects
"""

import asyncio
import logging
import os

from twitchhelix import EventSocketSession
from twitchhelix import HelixClient
from twitchhelix import SessionCallbacks
from twitchhelix import load_config_from_env
from twitchhelix import load_credentials_from_env
from twitchhelix import load_socket_config_from_env
from twitchhelix.subscriptions import CHANNEL_CHAT_MESSAGE

logging.basicConfig(level=logging.INFO)


async def main():
    config = load_config_from_env()
    broadcaster_id = os.getenv('TWITCH_BROADCASTER_ID', '12826')
    user_id = os.getenv('TWITCH_USER_ID', '141981764')

    async with HelixClient(config, load_credentials_from_env(config)) as helix:
        session = None

        async def on_welcomed(session_id):
            # A fresh session after a failure has no subscriptions
            if not session.registry.bound_to(session_id):
                await session.subscribe(
                    helix,
                    CHANNEL_CHAT_MESSAGE,
                    {"broadcaster_user_id": broadcaster_id, "user_id": user_id},
                )
                print(f"Subscribed to chat on session {session_id}")

        def on_notification(subscription, event):
            print(f"[{event.broadcaster_user_login}] {event.chatter_user_name}: {event.message.text}")

        def on_revoked(subscription_id, status):
            print(f"Subscription {subscription_id} revoked: {status.value}")

        def on_session_failed(status):
            print(f"Session failed: {status.value}")

        callbacks = SessionCallbacks(
            on_welcomed=on_welcomed,
            on_notification=on_notification,
            on_revoked=on_revoked,
            on_session_failed=on_session_failed,
        )
        session = EventSocketSession(load_socket_config_from_env(), callbacks)

        async with session:
            print("Reading chat for 60 seconds...")
            try:
                await asyncio.wait_for(session.wait_closed(), timeout=60)
            except asyncio.TimeoutError:
                pass

        print("Done")


if __name__ == "__main__":
    asyncio.run(main())
