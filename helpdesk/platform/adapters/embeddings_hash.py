import hashlib
import math
import re
from helpdesk.platform.ports.embeddings import EmbeddingsPort

_TOKEN = re.compile(r"\w+", re.UNICODE)

class HashingEmbeddings(EmbeddingsPort):
    """
    Deterministic feature-hashing embeddings over word unigrams and
    character trigrams, so Cyrillic and Kazakh word forms still overlap.
    """
    def __init__(self, d: int = 384):
        self._d = int(d)

    def dim(self) -> int:
        return self._d

    async def embed(self, texts: list[str]) -> list[list[float]]:
        out: list[list[float]] = []
        for t in texts:
            v = [0.0] * self._d
            for feat in self._features(t):
                h = int(hashlib.md5(feat.encode("utf-8")).hexdigest(), 16)
                v[h % self._d] += 1.0
            self._l2_normalize(v)
            out.append(v)
        return out

    def _features(self, text: str) -> list[str]:
        feats: list[str] = []
        for tok in _TOKEN.findall((text or "").lower()):
            feats.append(tok)
            padded = f"#{tok}#"
            feats.extend(padded[i:i + 3] for i in range(len(padded) - 2))
        return feats

    def _l2_normalize(self, v: list[float]) -> None:
        s = math.sqrt(sum(x * x for x in v)) or 1.0
        for i in range(len(v)):
            v[i] /= s
