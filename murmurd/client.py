import argparse
import asyncio
import json
import sys
import uuid

from murmurd.config import DEFAULT_SOCKET
from murmurd.protocol.json_handler import MAX_LINE, recv_json, send_json


async def request(socket_path, command, body=None, timeout=30.0, on_push=None):
    """Send one command to the daemon and wait for the response with our ref.

    The daemon applies no timeout of its own, so the client does.
    """
    ref = uuid.uuid4().hex
    reader, writer = await asyncio.open_unix_connection(socket_path, limit=MAX_LINE)
    try:
        await send_json(writer, {"type": command, "body": body or {}, "ref": ref})

        async def wait_for_response():
            while True:
                msg = await recv_json(reader)
                if msg.get("type") == "message" and "ref" not in msg:
                    if on_push is not None:
                        on_push(msg)
                    continue
                if msg.get("ref") == ref:
                    return msg

        return await asyncio.wait_for(wait_for_response(), timeout)
    finally:
        writer.close()


async def listen(socket_path, on_push):
    reader, writer = await asyncio.open_unix_connection(socket_path, limit=MAX_LINE)
    try:
        while True:
            try:
                msg = await recv_json(reader)
            except ConnectionError:
                return
            if msg.get("type") == "message":
                on_push(msg)
    finally:
        writer.close()


def _print(obj):
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def build_parser():
    parser = argparse.ArgumentParser(prog="murmur", description="Talk to a running murmurd")
    parser.add_argument("--socket", default=DEFAULT_SOCKET, help=f"daemon socket (default: {DEFAULT_SOCKET})")
    parser.add_argument("--timeout", type=float, default=30.0, help="seconds to wait for a response")
    sub = parser.add_subparsers(dest="command", required=True)

    send = sub.add_parser("send", help="send a message")
    send.add_argument("to", help='recipient user id, e.g. "gordon@example.org"')
    send.add_argument("message")
    sub.add_parser("playback", help="print the stored message history")
    sub.add_parser("purge", help="delete the stored message history")
    sub.add_parser("listen", help="print inbound messages as they arrive")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        if args.command == "listen":
            asyncio.run(listen(args.socket, _print))
            return 0

        body = {"to": args.to, "message": args.message} if args.command == "send" else {}
        if args.command == "send":
            print(f'Sending message: "{args.message}" to {args.to}...')
        response = asyncio.run(request(args.socket, args.command, body, timeout=args.timeout))
    except asyncio.TimeoutError:
        print(f"[!] No response from murmurd within {args.timeout}s")
        return 1
    except (ConnectionError, FileNotFoundError) as e:
        print(f"[!] Could not reach murmurd at {args.socket}: {e}")
        return 1
    except KeyboardInterrupt:
        return 130

    if response.get("error"):
        print(f"[✗] {response['error']}")
        return 1
    _print(response.get("result"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
