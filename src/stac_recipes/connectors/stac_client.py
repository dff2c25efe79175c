"""STAC client connector for STAC API operations."""

from typing import Any

import planetary_computer
from dagster import ConfigurableResource
from pystac_client import Client

from stac_recipes.connectors.settings import SettingsResource


class STACResource(ConfigurableResource[Any]):
    """STAC resource for creating STAC API clients."""

    settings: SettingsResource

    def create_client(self) -> Any:
        """Create STAC client.

        Items are signed in place when ``sign_requests`` is enabled, which
        Planetary Computer assets need before they can be read.

        :returns: Configured STAC client
        """
        modifier = planetary_computer.sign_inplace if self.settings.sign_requests else None
        return Client.open(self.settings.stac_api_url, modifier=modifier)
