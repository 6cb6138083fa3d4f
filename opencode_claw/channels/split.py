"""Message splitting for platforms with a length limit."""

# Break points closer to the start than this fraction of the limit are ignored.
MIN_BREAK_RATIO = 0.3


def split_message(text: str, max_length: int) -> list[str]:
    """
    Split text into chunks of at most max_length characters.

    Prefers paragraph breaks, then line breaks, then spaces, and hard-cuts as
    a last resort. Leading whitespace of each following chunk is dropped.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    min_break = max_length * MIN_BREAK_RATIO
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        window = remaining[:max_length]
        cut = -1
        for separator in ("\n\n", "\n", " "):
            index = window.rfind(separator)
            if index > min_break:
                cut = index
                break
        if cut == -1:
            cut = max_length

        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip()
    return chunks
