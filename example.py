"""Example: trigger subscriptions and an async iterator over a local Redis."""

from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

from redis_pubsub import RedisPubSub

logging.basicConfig(level=logging.INFO)


def repo_channel(trigger, options):
    """Scope comment triggers per repository: comments -> comments.<repo>."""
    if options and options.get("repo"):
        return f"{trigger}.{options['repo']}"
    return trigger


async def main() -> None:
    async with RedisPubSub(trigger_transform=repo_channel) as pubsub:
        await pubsub.connect()

        def on_comment(payload):
            print("comment:", payload)

        sub_id = await pubsub.subscribe("comments", on_comment, {"repo": "redis-pubsub"})
        iterator = pubsub.async_iterator(["user.signup", "order.placed"])
        await iterator.wait_ready()

        await pubsub.publish("comments.redis-pubsub", {"comment": "hello"})
        await pubsub.publish("user.signup", {"user_id": 101})
        await pubsub.publish("order.placed", {"order_id": 201})

        for _ in range(2):
            result = await iterator.next()
            print("event:", result.value)

        await iterator.aclose()
        pubsub.unsubscribe(sub_id)


if __name__ == "__main__":
    asyncio.run(main())
