from __future__ import annotations

import argparse
import io
import time
from concurrent.futures import ThreadPoolExecutor

import requests
from PIL import Image, ImageDraw


def make_image() -> bytes:
    img = Image.new('RGB', (256, 256), 'white')
    draw = ImageDraw.Draw(img)
    draw.rectangle((40, 40, 220, 220), fill='green')
    out = io.BytesIO()
    img.save(out, format='PNG')
    return out.getvalue()


def post_once(url: str, image: bytes) -> int:
    resp = requests.post(
        f"{url}/api/remove-bg",
        files={'file': ('bench.png', image, 'image/png')},
        timeout=90,
    )
    return resp.status_code


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument('--url', default='http://127.0.0.1:4000')
    parser.add_argument('--count', type=int, default=10)
    parser.add_argument('--concurrency', type=int, default=1)
    args = parser.parse_args()

    image = make_image()
    started = time.time()

    with ThreadPoolExecutor(max_workers=max(1, args.concurrency)) as pool:
        statuses = list(pool.map(lambda _: post_once(args.url, image), range(args.count)))

    elapsed = time.time() - started
    by_status: dict[int, int] = {}
    for status in statuses:
        by_status[status] = by_status.get(status, 0) + 1
    print({
        'requests': args.count,
        'statuses': by_status,
        'elapsed_sec': round(elapsed, 2),
        'rps': round(args.count / elapsed, 2),
    })


if __name__ == '__main__':
    main()
