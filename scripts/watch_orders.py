"""
Load one actor's orders and print every realtime change until Ctrl+C.

    python -m scripts.watch_orders restaurant <restaurant_id>
    python -m scripts.watch_orders user <user_id>
    python -m scripts.watch_orders orders <order_id> [<order_id> ...]

Needs BACKEND_URL and BACKEND_ANON_KEY (a .env file works).
"""

import logging
import sys

from backend.client import BackendClient
from backend.settings import settings_from_env
from orders.sync import SUBSCRIBE_ERROR, OrderSync
from orders.tracking import display_status
from orders.visibility import OrderScope
from realtime.socket import RealtimeSocket

logger = logging.getLogger("watch_orders")


def scope_from_args(args):
    if len(args) < 2:
        raise SystemExit(__doc__)
    kind, ids = args[0], args[1:]
    if kind == "restaurant":
        return OrderScope.for_restaurant(ids[0])
    if kind == "user":
        return OrderScope.for_user(ids[0])
    if kind == "orders":
        return OrderScope.for_orders(*ids)
    raise SystemExit(f"Unknown scope '{kind}'\n{__doc__}")


def print_snapshot(sync):
    print(f"--- {len(sync.orders)} orders ({sync.scope.key}) ---")
    for order in sync.orders:
        print(f"  {order.order_number or order.id}: {display_status(order)} "
              f"[payment {order.payment_status}] total {order.total:.2f}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    scope = scope_from_args(sys.argv[1:])

    settings = settings_from_env()
    client = BackendClient(settings)
    socket = RealtimeSocket(settings)
    sync = OrderSync(client, socket, scope)

    if not sync.start():
        print(f"Could not start: {sync.error}")
        if sync.error != SUBSCRIBE_ERROR:
            return 1
    print_snapshot(sync)

    last_seen = [o.to_row() for o in sync.orders]
    try:
        while socket.poll(timeout=1.0):
            current = [o.to_row() for o in sync.orders]
            if current != last_seen:
                print_snapshot(sync)
                last_seen = current
        logger.warning("Realtime connection lost")
    except KeyboardInterrupt:
        print("\nStopping.")
    finally:
        sync.close()
        socket.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
