"""
Vacation Catalog and Package Matcher
The merchant's fixed catalog and the free-text -> package ids capability
"""

import json
import re
import time
from typing import List, Optional

import ollama

from ..ap2_types import VacationPackage
from ..config import LLM_ENABLED, OLLAMA_HOST, OLLAMA_MODEL, OLLAMA_TIMEOUT
from ..utils import get_logger, log_llm_call

logger = get_logger("PackageMatcher")

MAX_MATCHES = 3


VACATION_PACKAGES: List[VacationPackage] = [
    VacationPackage(
        id="vac-001",
        name="Bali Beach Retreat",
        destination="Bali, Indonesia",
        region="Asia",
        activities=["beach", "surfing", "temples", "spa"],
        description="Seven nights in a Seminyak villa steps from the sand.",
        price=2499,
        duration_days=7,
        includes=["villa", "breakfast", "airport transfer"],
        image_url="https://images.example.com/bali.jpg",
    ),
    VacationPackage(
        id="vac-002",
        name="Maldives Overwater Escape",
        destination="Malé Atoll, Maldives",
        region="Asia",
        activities=["beach", "snorkeling", "diving", "spa"],
        description="Five nights in an overwater bungalow with reef access.",
        price=4899,
        duration_days=5,
        includes=["overwater bungalow", "all meals", "seaplane transfer"],
        image_url="https://images.example.com/maldives.jpg",
    ),
    VacationPackage(
        id="vac-003",
        name="Caribbean Island Hopper",
        destination="St. Lucia & Grenada",
        region="Central America",
        activities=["beach", "sailing", "snorkeling", "rainforest"],
        description="Eight days sailing between two Windward Islands.",
        price=3299,
        duration_days=8,
        includes=["catamaran cabin", "meals on board", "island excursions"],
        image_url="https://images.example.com/caribbean.jpg",
    ),
    VacationPackage(
        id="vac-004",
        name="Costa Rica Rainforest Adventure",
        destination="Arenal & Manuel Antonio, Costa Rica",
        region="Central America",
        activities=["hiking", "ziplining", "wildlife", "beach"],
        description="Volcano hikes, canopy ziplines and a Pacific beach finish.",
        price=2199,
        duration_days=9,
        includes=["eco-lodges", "guided tours", "ground transport"],
        image_url="https://images.example.com/costa-rica.jpg",
    ),
    VacationPackage(
        id="vac-005",
        name="Amalfi Coast Getaway",
        destination="Positano, Italy",
        region="Europe",
        activities=["beach", "food", "boat tours", "culture"],
        description="Cliffside hotel, lemon groves and a private boat day to Capri.",
        price=3899,
        duration_days=6,
        includes=["boutique hotel", "breakfast", "Capri boat tour"],
        image_url="https://images.example.com/amalfi.jpg",
    ),
    VacationPackage(
        id="vac-006",
        name="Kenya Safari Expedition",
        destination="Maasai Mara, Kenya",
        region="Africa",
        activities=["safari", "wildlife", "photography"],
        description="Game drives across the Mara during the great migration.",
        price=5499,
        duration_days=7,
        includes=["tented camp", "all meals", "daily game drives"],
        image_url="https://images.example.com/kenya.jpg",
    ),
    VacationPackage(
        id="vac-007",
        name="Great Barrier Reef Discovery",
        destination="Cairns, Australia",
        region="Australia/Oceania",
        activities=["diving", "snorkeling", "beach", "rainforest"],
        description="Liveaboard dive trip on the outer reef plus Daintree day trip.",
        price=4199,
        duration_days=8,
        includes=["liveaboard cabin", "dive gear", "rainforest tour"],
        image_url="https://images.example.com/reef.jpg",
    ),
    VacationPackage(
        id="vac-008",
        name="Patagonia Trekking",
        destination="Torres del Paine, Chile",
        region="South America",
        activities=["hiking", "glaciers", "camping"],
        description="The W Trek with refugio stays and a glacier boat crossing.",
        price=2899,
        duration_days=10,
        includes=["refugios", "guide", "park fees"],
        image_url="https://images.example.com/patagonia.jpg",
    ),
]


def get_package(package_id: str, catalog: Optional[List[VacationPackage]] = None) -> Optional[VacationPackage]:
    for package in catalog if catalog is not None else VACATION_PACKAGES:
        if package.id == package_id:
            return package
    return None


class PackageMatcher:
    """External capability: free-text intent -> ordered catalog ids (0-3)."""

    async def match(self, description: str, catalog: List[VacationPackage]) -> List[str]:
        raise NotImplementedError


class FirstNMatcher(PackageMatcher):
    """Deterministic fallback: the first entries of the catalog."""

    def __init__(self, limit: int = MAX_MATCHES):
        self.limit = limit

    async def match(self, description: str, catalog: List[VacationPackage]) -> List[str]:
        return [package.id for package in catalog[: self.limit]]


class OllamaPackageMatcher(PackageMatcher):
    """
    LLM-backed package selection.

    Any failure (Ollama down, unparseable reply, no known ids) falls back to
    the first three catalog entries so the protocol still completes.
    """

    def __init__(
        self,
        model: str = OLLAMA_MODEL,
        client: Optional[ollama.AsyncClient] = None,
        fallback: Optional[PackageMatcher] = None,
    ):
        self.model = model
        self.client = client or ollama.AsyncClient(host=OLLAMA_HOST, timeout=OLLAMA_TIMEOUT)
        self.fallback = fallback or FirstNMatcher()

    def _build_prompt(self, description: str, catalog: List[VacationPackage]) -> str:
        listing = "\n".join(
            f"- {pkg.id}: {pkg.name} - ${pkg.price:.0f} {pkg.currency} ({pkg.region}, {', '.join(pkg.activities)})"
            for pkg in catalog
        )
        return f"""Select vacation packages matching this user request: "{description}"

Available packages:
{listing}

Return a JSON object with an array of package IDs that match the user's criteria.
Match by region, activities, AND price/budget constraints. Return 1-3 packages that best fit.

Example responses:
{{"package_ids": ["vac-001", "vac-002"]}}
{{"package_ids": ["vac-003"]}}"""

    async def match(self, description: str, catalog: List[VacationPackage]) -> List[str]:
        if not LLM_ENABLED:
            return await self.fallback.match(description, catalog)

        prompt = self._build_prompt(description, catalog)
        try:
            start_time = time.time()
            response = await self.client.chat(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are a vacation package selector. Return valid JSON only."},
                    {"role": "user", "content": prompt},
                ],
                options={"temperature": 0.3},
            )
            content = response["message"]["content"]
            log_llm_call(logger, self.model, prompt, content, time.time() - start_time)

            known = {pkg.id for pkg in catalog}
            selected = [pid for pid in parse_package_ids(content) if pid in known]
            if selected:
                return selected[:MAX_MATCHES]
            logger.warning("Matcher returned no known package ids, using fallback")
        except Exception as e:
            logger.warning(f"Package matching failed, using fallback: {e}")

        return await self.fallback.match(description, catalog)


def parse_package_ids(content: str) -> List[str]:
    """Pull ``package_ids`` out of an LLM reply that may wrap JSON in fences or think tags."""
    text = re.sub(r"<think>.*?</think>", "", content, flags=re.DOTALL).strip()
    fenced = re.search(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", text)
    if fenced:
        text = fenced.group(1)
    else:
        braces = re.search(r"\{[\s\S]*\}", text)
        if braces:
            text = braces.group()

    try:
        ids = json.loads(text).get("package_ids", [])
    except (json.JSONDecodeError, AttributeError):
        return []
    if not isinstance(ids, list):
        return []

    seen = []
    for pid in ids:
        if isinstance(pid, str) and pid not in seen:
            seen.append(pid)
    return seen
