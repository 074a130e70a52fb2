"""
XPRESS Huffman (MS-XCA) decompression.

Windows 10 and later store Prefetch files compressed with the
COMPRESSION_FORMAT_XPRESS_HUFF algorithm behind an 8-byte ``MAM\\x04`` header.
Windows itself decompresses them with ``RtlDecompressBufferEx``; this module
implements the same algorithm so that images can be processed on any platform.

The stream is a sequence of blocks, each producing up to 65536 output bytes:

- 256 bytes holding the 4-bit code lengths of the 512 Huffman symbols
  (symbol ``2i`` in the low nibble of byte ``i``, ``2i+1`` in the high nibble)
- a bit stream read as 16-bit little-endian words, most significant bit first

Symbols below 256 are literals. Symbols 256-511 encode a match: the low nibble
is the match length minus 3 (15 means an extended length follows as raw
bytes), the high nibble is the number of offset bits that follow the symbol.
"""

import logging
import struct

from chronos.utils.error_handler import DecompressionError

logger = logging.getLogger(__name__)

MAM_SIGNATURE = b'MAM\x04'
MAM_HEADER_SIZE = 8

BLOCK_OUTPUT_SIZE = 65536
TABLE_SIZE = 256
SYMBOL_COUNT = 512
MAX_CODE_LENGTH = 15
DECODING_TABLE_SIZE = 1 << MAX_CODE_LENGTH


def is_compressed(data: bytes) -> bool:
    """True if ``data`` starts with the Windows 10+ compressed prefetch header"""
    return data[:4] == MAM_SIGNATURE


def build_decoding_table(lengths) -> list:
    """
    Build the 2**15-entry lookup table mapping the next 15 bits to a symbol.

    Codes are canonical: assigned by increasing bit length, then by symbol.

    Raises:
        DecompressionError: If the code lengths do not form a complete prefix code
    """
    table = [0] * DECODING_TABLE_SIZE
    position = 0
    for bit_length in range(1, MAX_CODE_LENGTH + 1):
        entry_count = 1 << (MAX_CODE_LENGTH - bit_length)
        for symbol in range(SYMBOL_COUNT):
            if lengths[symbol] != bit_length:
                continue
            if position + entry_count > DECODING_TABLE_SIZE:
                raise DecompressionError("Huffman code lengths oversubscribe the code space")
            table[position:position + entry_count] = [symbol] * entry_count
            position += entry_count

    if position != DECODING_TABLE_SIZE:
        raise DecompressionError(
            f"Huffman code lengths are incomplete ({position} of {DECODING_TABLE_SIZE} entries)"
        )
    return table


def decompress(data: bytes, output_size: int) -> bytes:
    """
    Decompress an XPRESS Huffman stream.

    Args:
        data: Compressed bytes (without the MAM header)
        output_size: Exact size of the decompressed result

    Returns:
        bytes: Decompressed data of exactly ``output_size`` bytes

    Raises:
        DecompressionError: On a malformed table, a match reaching before the
            start of the output, or input exhausted before the output is complete
    """
    output = bytearray()
    input_length = len(data)
    pos = 0

    def read16(at: int) -> int:
        # The bit reader looks ahead up to 4 bytes past the final symbol
        if at + 2 <= input_length:
            return data[at] | (data[at + 1] << 8)
        if at > input_length + 4:
            raise DecompressionError("Compressed stream ended before output was complete")
        return 0

    while len(output) < output_size:
        if pos + TABLE_SIZE > input_length:
            raise DecompressionError(
                f"Truncated Huffman table at input offset {pos} "
                f"({len(output)} of {output_size} bytes produced)"
            )

        lengths = []
        for byte in data[pos:pos + TABLE_SIZE]:
            lengths.append(byte & 0x0F)
            lengths.append(byte >> 4)
        table = build_decoding_table(lengths)
        pos += TABLE_SIZE

        next_bits = (read16(pos) << 16) | read16(pos + 2)
        pos += 4
        extra_bits = 16

        block_end = min(len(output) + BLOCK_OUTPUT_SIZE, output_size)
        while len(output) < block_end:
            symbol = table[next_bits >> (32 - MAX_CODE_LENGTH)]
            bit_length = lengths[symbol]
            next_bits = (next_bits << bit_length) & 0xFFFFFFFF
            extra_bits -= bit_length
            if extra_bits < 0:
                next_bits |= read16(pos) << (-extra_bits)
                next_bits &= 0xFFFFFFFF
                pos += 2
                extra_bits += 16

            if symbol < 256:
                output.append(symbol)
                continue

            symbol -= 256
            match_length = symbol & 0x0F
            offset_bits = symbol >> 4

            if match_length == 15:
                if pos >= input_length:
                    raise DecompressionError("Extended match length past end of input")
                match_length = data[pos]
                pos += 1
                if match_length == 255:
                    if pos + 2 > input_length:
                        raise DecompressionError("Extended match length past end of input")
                    match_length, = struct.unpack_from('<H', data, pos)
                    pos += 2
                    if match_length < 15:
                        raise DecompressionError(f"Invalid extended match length {match_length}")
                    match_length -= 15
                match_length += 15
            match_length += 3

            match_offset = ((next_bits >> (32 - offset_bits)) if offset_bits else 0) + (1 << offset_bits)
            next_bits = (next_bits << offset_bits) & 0xFFFFFFFF
            extra_bits -= offset_bits
            if extra_bits < 0:
                next_bits |= read16(pos) << (-extra_bits)
                next_bits &= 0xFFFFFFFF
                pos += 2
                extra_bits += 16

            start = len(output) - match_offset
            if start < 0:
                raise DecompressionError(
                    f"Match offset {match_offset} reaches before start of output at {len(output)}"
                )
            match_length = min(match_length, output_size - len(output))
            # Byte-by-byte: the source may overlap the bytes being written
            for index in range(match_length):
                output.append(output[start + index])

    logger.debug(f"Decompressed {input_length:,} bytes into {len(output):,}")
    return bytes(output)


def decompress_prefetch(data: bytes) -> bytes:
    """
    Strip the ``MAM\\x04`` header and decompress the body.

    Raises:
        DecompressionError: If the header is missing or the body is malformed
    """
    if len(data) < MAM_HEADER_SIZE or not is_compressed(data):
        raise DecompressionError("Missing MAM\\x04 compression header")
    output_size, = struct.unpack_from('<I', data, 4)
    if output_size == 0:
        raise DecompressionError("Compressed prefetch declares an empty body")
    return decompress(data[MAM_HEADER_SIZE:], output_size)
