import logging
from typing import Union

logger = logging.getLogger(__name__)

# vLLM renders token ids this way when `return_tokens_as_token_ids` is set
TOKEN_ID_PREFIX = "token_id:"

def parse_token_id(token: Union[str, int]) -> int:
    """
    Turns a token as it appears in a completions logprobs payload into
    its integer id. Accepts "token_id:123", "123" or an int.
    """
    if isinstance(token, bool):
        raise ValueError(f"Not a token id: {token!r}")
    if isinstance(token, int):
        return token
    if not isinstance(token, str):
        raise ValueError(f"Not a token id: {token!r}")
    text = token.strip()
    if text.startswith(TOKEN_ID_PREFIX):
        text = text[len(TOKEN_ID_PREFIX):]
    try:
        return int(text)
    except ValueError:
        raise ValueError(
            f"Cannot read a token id from {token!r}; "
            f"is the server returning tokens as ids ('{TOKEN_ID_PREFIX}N')?"
        ) from None
