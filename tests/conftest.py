import pytest
from PIL import Image

from metadata_builder import CollectionConfig
from trait_catalog import TraitCatalog

SIZE = (8, 8)

RED = (220, 40, 40, 255)
BLUE = (40, 40, 220, 255)
GREEN = (40, 200, 40, 255)
PURPLE = (150, 40, 200, 255)
GOLD = (230, 190, 30, 255)


def solid(color, size=SIZE):
    return Image.new('RGBA', size, color)


def left_half(color, size=SIZE):
    img = Image.new('RGBA', size, (0, 0, 0, 0))
    img.paste(Image.new('RGBA', (size[0] // 2, size[1]), color), (0, 0))
    return img


def top_left_square(color, size=SIZE):
    img = Image.new('RGBA', size, (0, 0, 0, 0))
    img.paste(Image.new('RGBA', (2, 2), color), (0, 0))
    return img


class FakeLoader:
    """Deterministic in-memory loader."""

    def __init__(self, images):
        self.images = dict(images)
        self.calls = []

    def load(self, asset_ref):
        self.calls.append(asset_ref)
        return self.images.get(asset_ref)


SMALL_CATALOG = {
    'layer_order': ['background', 'skin', 'hat'],
    'required': ['skin'],
    'backdrop_categories': ['background'],
    'labels': {'skin': 'Skin Base'},
    'traits': {
        'background': [
            {'name': 'None'},
            {'name': 'Sky', 'file': 'backgrounds/sky.png'},
            {'name': 'Night', 'file': 'backgrounds/night.png'},
        ],
        'skin': [
            {'name': 'None'},
            {'name': 'Green', 'file': 'skin/green.png'},
            {'name': 'Purple', 'file': 'skin/purple.png'},
        ],
        'hat': [
            {'name': 'None'},
            {'name': 'Cap', 'file': 'hats/cap.png'},
            {'name': 'Crown', 'file': 'hats/crown.png'},
        ],
    },
}


def small_images():
    return {
        'backgrounds/sky.png': solid(BLUE),
        'backgrounds/night.png': solid((10, 10, 40, 255)),
        'skin/green.png': left_half(GREEN),
        'skin/purple.png': left_half(PURPLE),
        'hats/cap.png': top_left_square(RED),
        'hats/crown.png': top_left_square(GOLD),
    }


def collection_catalog_data():
    """5 x 3 x 3 x 4 = 180 distinct combinations."""
    def options(category, names, with_none):
        opts = [{'name': 'None'}] if with_none else []
        opts += [{'name': n, 'file': f"{category}/{n.lower()}.png"} for n in names]
        return opts

    return {
        'layer_order': ['background', 'skin', 'eyes', 'hat'],
        'required': ['skin', 'eyes'],
        'backdrop_categories': ['background'],
        'traits': {
            'background': options('background', ['Sky', 'Desert', 'Subway', 'Clouds'], True),
            'skin': options('skin', ['Green', 'Blue', 'Toxic'], False),
            'eyes': options('eyes', ['Normal', 'Angry', 'Lazer'], False),
            'hat': options('hat', ['Cap', 'Crown', 'Beanie'], True),
        },
    }


def collection_images():
    images = {}
    for name in ['sky', 'desert', 'subway', 'clouds']:
        images[f"background/{name}.png"] = solid((30, 120, 200, 255))
    for name in ['green', 'blue', 'toxic']:
        images[f"skin/{name}.png"] = left_half(GREEN)
    for name in ['normal', 'angry', 'lazer']:
        images[f"eyes/{name}.png"] = top_left_square(RED)
    for name in ['cap', 'crown', 'beanie']:
        images[f"hat/{name}.png"] = top_left_square(GOLD)
    return images


@pytest.fixture
def small_catalog():
    return TraitCatalog.from_dict(SMALL_CATALOG)


@pytest.fixture
def small_loader():
    return FakeLoader(small_images())


@pytest.fixture
def collection_catalog():
    return TraitCatalog.from_dict(collection_catalog_data())


@pytest.fixture
def collection_loader():
    return FakeLoader(collection_images())


@pytest.fixture
def foo_config():
    return CollectionConfig(
        name="Foo",
        description="Foo collection",
        media_base_uri="ipfs://CID",
        external_uri="https://foo.example",
    )
