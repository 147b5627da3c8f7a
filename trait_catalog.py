"""
Trait catalog: trait options per category and the fixed layer paint order.

The catalog is read-only to the rest of the pipeline. It can be built from a
dict, a JSON file, or a directory tree with one folder per category.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

NONE_TRAIT = "None"
IMAGE_SUFFIXES = ('.png', '.webp')


@dataclass(frozen=True)
class TraitDefinition:
    category: str
    name: str
    asset_ref: Optional[str] = None
    weight: Optional[float] = None

    @property
    def is_none(self) -> bool:
        return self.name == NONE_TRAIT


class TraitAssignment:
    """
    Immutable category -> trait mapping for a single token.

    Pairs are kept in layer order. Two assignments are equal when their
    canonical keys match, regardless of pair order.
    """

    __slots__ = ('_pairs', '_key')

    def __init__(self, pairs: Sequence[Tuple[str, str]]):
        object.__setattr__(self, '_pairs', tuple((str(c), str(t)) for c, t in pairs))
        key = "|".join(f"{c}:{t}" for c, t in sorted(self._pairs))
        object.__setattr__(self, '_key', key)

    def __setattr__(self, name, value):
        raise AttributeError("TraitAssignment is immutable")

    @classmethod
    def from_mapping(cls, traits: Mapping[str, str], order: Optional[Sequence[str]] = None) -> 'TraitAssignment':
        if order is None:
            return cls(list(traits.items()))
        known = set(order)
        ordered = [(c, traits[c]) for c in order if c in traits]
        extra = [(c, t) for c, t in traits.items() if c not in known]
        return cls(ordered + extra)

    def canonical_key(self) -> str:
        return self._key

    def __getitem__(self, category: str) -> str:
        for c, t in self._pairs:
            if c == category:
                return t
        raise KeyError(category)

    def get(self, category: str, default: Optional[str] = None) -> Optional[str]:
        try:
            return self[category]
        except KeyError:
            return default

    def __contains__(self, category: object) -> bool:
        return any(c == category for c, _ in self._pairs)

    def __iter__(self) -> Iterator[str]:
        return (c for c, _ in self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def items(self) -> Tuple[Tuple[str, str], ...]:
        return self._pairs

    def populated(self) -> List[Tuple[str, str]]:
        return [(c, t) for c, t in self._pairs if t != NONE_TRAIT]

    def as_dict(self) -> Dict[str, str]:
        return dict(self._pairs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TraitAssignment):
            return NotImplemented
        return self._key == other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __repr__(self) -> str:
        return f"TraitAssignment({self.as_dict()!r})"


class TraitCatalog:
    """Read-only trait catalog."""

    def __init__(
        self,
        layer_order: Sequence[str],
        traits: Mapping[str, Sequence[TraitDefinition]],
        required_categories: Sequence[str] = (),
        exclusive_groups: Sequence[Sequence[str]] = (),
        backdrop_categories: Sequence[str] = (),
        category_labels: Optional[Mapping[str, str]] = None,
    ):
        self._layer_order = list(layer_order)
        missing = [c for c in self._layer_order if c not in traits]
        if missing:
            raise ValueError(f"Layer order names categories without traits: {', '.join(missing)}")
        self._traits = {c: tuple(traits[c]) for c in self._layer_order}
        for category, options in self._traits.items():
            names = [t.name for t in options]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise ValueError(f"Category {category} lists trait names more than once: {', '.join(duplicates)}")
        self.required_categories = frozenset(required_categories)
        self.exclusive_groups = tuple(tuple(g) for g in exclusive_groups if len(g) > 1)
        self.backdrop_categories = tuple(backdrop_categories)
        self.category_labels = dict(category_labels or {})

        grouped = set()
        for group in self.exclusive_groups:
            unknown = [c for c in group if c not in self._traits]
            if unknown:
                raise ValueError(f"Exclusive group names unknown categories: {', '.join(unknown)}")
            overlap = grouped.intersection(group)
            if overlap:
                raise ValueError(f"Categories belong to more than one exclusive group: {', '.join(sorted(overlap))}")
            grouped.update(group)

    def layer_order(self) -> List[str]:
        return list(self._layer_order)

    def list_traits(self, category: str) -> List[TraitDefinition]:
        return list(self._traits[category])

    def find_trait(self, category: str, name: str) -> Optional[TraitDefinition]:
        for trait in self._traits.get(category, ()):
            if trait.name == name:
                return trait
        return None

    def label_for(self, category: str) -> str:
        if category in self.category_labels:
            return self.category_labels[category]
        return category[:1].upper() + category[1:]

    @classmethod
    def from_dict(cls, data: Mapping) -> 'TraitCatalog':
        """
        Build a catalog from a plain mapping.

        Expected shape::

            {
              "layer_order": ["background", "skin", ...],
              "required": ["skin"],
              "exclusive_groups": [["shirt", "jacket"]],
              "backdrop_categories": ["background"],
              "labels": {"skin": "Skin Base"},
              "traits": {
                "background": [{"name": "None"}, {"name": "Sky", "file": "backgrounds/sky.png", "weight": 50}]
              }
            }
        """
        layer_order = data.get('layer_order') or list(data.get('traits', {}).keys())
        traits: Dict[str, List[TraitDefinition]] = {}
        for category, options in data.get('traits', {}).items():
            traits[category] = [
                TraitDefinition(
                    category=category,
                    name=str(option['name']),
                    asset_ref=option.get('file'),
                    weight=option.get('weight'),
                )
                for option in options
            ]
        return cls(
            layer_order=layer_order,
            traits=traits,
            required_categories=data.get('required', ()),
            exclusive_groups=data.get('exclusive_groups', ()),
            backdrop_categories=data.get('backdrop_categories', ()),
            category_labels=data.get('labels'),
        )

    @classmethod
    def from_json(cls, path) -> 'TraitCatalog':
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        catalog = cls.from_dict(data)
        logger.info(f"Loaded trait catalog {path} with {len(catalog.layer_order())} categories")
        return catalog

    @classmethod
    def from_directory(cls, root, layer_order: Sequence[str], required_categories: Sequence[str] = (),
                       backdrop_categories: Sequence[str] = ()) -> 'TraitCatalog':
        """
        Scan ``root/<category>/<trait>.png``. Trait names come from file stems
        with underscores and dashes turned into spaces. Non-required categories
        get an implicit "None" option.
        """
        root = Path(root)
        traits: Dict[str, List[TraitDefinition]] = {}
        for category in layer_order:
            folder = root / category
            options: List[TraitDefinition] = []
            if category not in required_categories:
                options.append(TraitDefinition(category, NONE_TRAIT))
            if folder.is_dir():
                for f in sorted(folder.iterdir()):
                    if f.is_file() and f.suffix.lower() in IMAGE_SUFFIXES:
                        name = f.stem.replace('_', ' ').replace('-', ' ').title()
                        options.append(TraitDefinition(category, name, f"{category}/{f.name}"))
            else:
                logger.warning(f"Trait folder missing for category {category}: {folder}")
            traits[category] = options
        return cls(layer_order, traits, required_categories=required_categories,
                   backdrop_categories=backdrop_categories)
