"""Print a tenant's session status and queue contents."""

import argparse

import httpx


def main() -> None:
    """Fetch `/status` and `/queue` for one tenant and print a short report."""

    parser = argparse.ArgumentParser(description="Report session and queue state for one tenant.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--status", default=None, help="Only list messages with this status")
    parser.add_argument("--limit", type=int, default=20)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key, "x-tenant-id": args.tenant}
    with httpx.Client(base_url=args.base_url, timeout=10.0, headers=headers) as client:
        status = client.get("/status")
        status.raise_for_status()
        params = {"limit": args.limit}
        if args.status:
            params["status"] = args.status
        queue = client.get("/queue", params=params)
        queue.raise_for_status()

    session = status.json()
    print(f"tenant={session['tenant_id']} state={session['connection_state']} identity={session['channel_identity']}")
    print(
        f"sent_today={session['messages_sent_today']} rate_remaining={session['rate_limit_remaining']} "
        f"client_live={session['client_live']}"
    )
    print("queue=" + " ".join(f"{name}:{count}" for name, count in sorted(session["queue"].items())))
    for message in queue.json()["messages"]:
        print(
            f"{message['id']} {message['status']:<10} p{message['priority']} "
            f"attempts={message['attempts']}/{message['max_attempts']} "
            f"at={message['scheduled_for']} to={message['recipient_address']} "
            f"error={message['last_error'] or '-'}"
        )


if __name__ == "__main__":
    main()
