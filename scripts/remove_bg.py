from __future__ import annotations

import argparse
import sys

from bgrelay.client.pipeline import ClientPipeline, Done, Failed


def main() -> int:
    parser = argparse.ArgumentParser(description="Remove the background of one image through the relay")
    parser.add_argument('source', help='local image path, or http(s) URL of a sample image')
    parser.add_argument('--url', default='http://127.0.0.1:4000', help='relay base URL')
    parser.add_argument('--output', default=None, help='where to save the PNG')
    parser.add_argument('--timeout', type=float, default=30)
    args = parser.parse_args()

    with ClientPipeline(args.url, timeout=args.timeout) as pipeline:
        if args.source.startswith(('http://', 'https://')):
            pipeline.select_url(args.source)
        else:
            pipeline.select_path(args.source)
        state = pipeline.wait()
        if isinstance(state, Done):
            saved = pipeline.save(args.output)
            print({'status': 'done', 'output': str(saved), 'bytes': len(state.processed)})
            return 0
        if isinstance(state, Failed):
            print({'status': 'failed', 'error': state.message}, file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
