#!/usr/bin/env python3
"""
benchmark_compare.py -- Compare the Mario & Luigi chunk codec against
general-purpose baselines from the standard library.

This utility script exercises several compressors on a small suite of
hand-crafted data sets shaped like the chunks found in the game's archives
(tile data with long zero runs, repeated map rows, palette-like records,
noise).  Each compressor is invoked to compress and then decompress the
data.  The script measures the total bytes produced (compression ratio) and
the time taken to encode and decode; timings are repeated and reduced to
their median with numpy.  Results are collected into a pandas DataFrame and
plotted using matplotlib.

The codec is imported from ``mnl_compression``.  Two baselines are
provided:

* ``zlib`` -- DEFLATE at level 9, the usual reference point for LZ77 coders.
* ``lzma`` -- the xz container at its default preset.

The codec is not meant to beat either baseline; it has to reproduce the
game's encoder.  The comparison shows what the format costs in size and
how slow the pure-Python greedy search is.

Run this script directly to print a table of metrics and output a
PNG chart named ``mnl_comparison_plot.png`` into the working directory.
"""

import lzma
import random
import time
import zlib
from typing import Callable, Dict, List, Tuple

import matplotlib
matplotlib.use('Agg') # headless backend
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from mnl_compression import compress as mnl_compress, decompress as mnl_decompress

Codec = Tuple[Callable[[bytes], bytes], Callable[[bytes], bytes]]

CODECS: Dict[str, Codec] = {
    'mnl_compression': (mnl_compress, lambda blob: mnl_decompress(blob, strict=True)),
    'zlib': (lambda data: zlib.compress(data, 9), zlib.decompress),
    'lzma': (lzma.compress, lzma.decompress),
}


def build_datasets(seed: int = 42) -> Dict[str, bytes]:
    """Assemble the test data sets; ``seed`` keeps the random ones reproducible."""
    rng = random.Random(seed)
    # 4bpp 8x8 tiles: mostly transparent with a few coloured rows
    tiles = bytearray()
    for _ in range(128):
        tile = bytearray(32)
        for row in rng.sample(range(8), 3):
            tile[row * 4:row * 4 + 4] = bytes(rng.getrandbits(8) for _ in range(4))
        tiles += tile
    # tile layer: 64x32 little-endian tile indexes built from repeated rows
    rows = [bytes(rng.randrange(16) for _ in range(128)) for _ in range(4)]
    layer = b"".join(rows[rng.randrange(4)] for _ in range(32))
    return {
        'sparse_tiles': bytes(tiles),
        'tile_layer': layer,
        'palette_records': b"".join(
            bytes([i, i >> 1, 0x7C, 0x00]) for i in range(256)) * 2,
        'zero_padding': b"\x00" * 4096,
        'random_bytes': bytes(rng.getrandbits(8) for _ in range(4096)),
    }


def _median_ms(fn: Callable[[], object], repeats: int) -> float:
    samples = []
    for _ in range(repeats):
        t0 = time.perf_counter()
        fn()
        samples.append((time.perf_counter() - t0) * 1000.0)
    return float(np.median(samples))


def run_benchmarks(repeats: int = 3, plot_path: str = 'mnl_comparison_plot.png'):
    """Run compression benchmarks on the data set suite.

    Returns a pandas DataFrame with results for each combination of
    dataset and compressor. Also writes a PNG plot to disk.
    """
    results: List[Dict[str, object]] = []

    for name, data in build_datasets().items():
        orig_len = len(data)
        for algorithm, (encode, decode) in CODECS.items():
            cdata = encode(data)
            ok = decode(cdata) == data
            results.append({
                'dataset': name,
                'algorithm': algorithm,
                'ratio': len(cdata) / orig_len,
                'comp_ms': _median_ms(lambda: encode(data), repeats),
                'decomp_ms': _median_ms(lambda: decode(cdata), repeats),
                'valid': ok,
            })

    df = pd.DataFrame(results)
    # Create a bar chart comparing ratios and times
    fig, axs = plt.subplots(3, 1, figsize=(8, 10))
    for ax, metric, title in zip(
        axs,
        ['ratio', 'comp_ms', 'decomp_ms'],
        ['Compression Ratio (lower is better)',
         'Compression Time (ms)',
         'Decompression Time (ms)']):
        subset = df.pivot(index='dataset', columns='algorithm', values=metric)
        subset.plot.bar(ax=ax)
        ax.set_title(title)
        ax.set_ylabel(metric)
        ax.legend(loc='best', fontsize='small')
    plt.tight_layout()
    plt.savefig(plot_path, dpi=150)
    plt.close(fig)
    print(df)
    print(f"Plot written to {plot_path}")
    return df, plot_path


if __name__ == '__main__':
    run_benchmarks()
