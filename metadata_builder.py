"""
Token metadata builder.

Turns a trait assignment plus collection settings into the marketplace
metadata document (ERC-721 style name/description/image/attributes).
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from trait_catalog import TraitAssignment

TOKEN_ID_TRAIT = "Token ID"


@dataclass(frozen=True)
class CollectionConfig:
    name: str
    description: str
    media_base_uri: str
    external_uri: str = ""
    image_extension: str = "png"
    category_labels: Optional[Dict[str, str]] = None
    shadow_suffix: str = "Shadow"

    def label_for(self, category: str) -> str:
        if self.category_labels and category in self.category_labels:
            return self.category_labels[category]
        return category[:1].upper() + category[1:]

    def image_uri(self, token_id: int) -> str:
        base = self.media_base_uri.rstrip('/')
        return f"{base}/{token_id}.{self.image_extension}"


@dataclass
class TokenMetadata:
    token_id: int
    name: str
    description: str
    image: str
    external_url: str
    attributes: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'image': self.image,
            'external_url': self.external_url,
            'attributes': [dict(a) for a in self.attributes],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def build_attributes(assignment: TraitAssignment, config: CollectionConfig, token_id: int) -> List[Dict[str, Any]]:
    attributes: List[Dict[str, Any]] = [
        {'trait_type': config.label_for(category), 'value': trait}
        for category, trait in assignment.populated()
    ]
    attributes.append({'trait_type': TOKEN_ID_TRAIT, 'value': token_id, 'display_type': 'number'})
    return attributes


def build_token_metadata(token_id: int, assignment: TraitAssignment, config: CollectionConfig) -> TokenMetadata:
    """Build the public metadata record for one token."""
    return TokenMetadata(
        token_id=token_id,
        name=f"{config.name} #{token_id}",
        description=config.description,
        image=config.image_uri(token_id),
        external_url=config.external_uri,
        attributes=build_attributes(assignment, config, token_id),
    )


def build_shadow_metadata(token_id: int, assignment: TraitAssignment, config: CollectionConfig) -> TokenMetadata:
    """Metadata shown for a silhouette token before the reveal."""
    shadow_name = f"{config.name} {config.shadow_suffix} #{token_id}"
    return TokenMetadata(
        token_id=token_id,
        name=shadow_name,
        description=f"{shadow_name} - Mystery PFP awaiting reveal",
        image=config.image_uri(token_id),
        external_url=config.external_uri,
        attributes=build_attributes(assignment, config, token_id),
    )


def build_reveal_record(token_id: int, assignment: TraitAssignment, full_metadata: TokenMetadata,
                        shadow_image: str) -> Dict[str, Any]:
    """Full trait data kept aside so the token can be revealed after mint."""
    return {
        'id': token_id,
        'traits': assignment.as_dict(),
        'fullMetadata': full_metadata.to_dict(),
        'shadowImageUsed': shadow_image,
        'revealInstructions': 'Use this data to update metadata and reveal full PFP after mint',
    }


def build_placeholder_metadata(token_id: int, media_base_uri: str, extension: str = "png") -> Dict[str, Any]:
    """Empty metadata used for placeholder minting; image points at the final location."""
    return {
        'name': "",
        'description': "",
        'image': f"{media_base_uri.rstrip('/')}/{token_id}.{extension}",
        'attributes': [],
    }


def validate_collection(records: Iterable[TokenMetadata]) -> List[str]:
    """Check ids are sequential from 1 and required fields are filled in."""
    errors: List[str] = []
    count = 0
    for index, record in enumerate(records):
        count += 1
        if record.token_id != index + 1:
            errors.append(f"Token at index {index} has incorrect ID {record.token_id}, expected {index + 1}")
        if not record.name or not record.description or not record.image:
            errors.append(f"Token #{record.token_id} missing required metadata fields")
    if count == 0:
        errors.append("Collection is empty")
    return errors
