import json

# Lines longer than this are treated as a protocol violation
MAX_LINE = 1024 * 1024


def encode_json(obj) -> bytes:
    """
    Serialize a JSON object into one newline-terminated line.
    """
    return (json.dumps(obj, separators=(",", ":")) + '\n').encode('utf-8')  # newline as delimiter


def decode_json(line: bytes):
    """
    Parse one newline-delimited line back into a JSON object.
    """
    return json.loads(line.decode('utf-8'))


async def send_json(writer, obj):
    writer.write(encode_json(obj))
    await writer.drain()


async def recv_json(reader):
    """
    Receive JSON data from a stream (expects newline-delimited JSON).
    """
    line = await reader.readline()
    if not line:
        raise ConnectionError("Stream closed while receiving data.")
    return decode_json(line)
