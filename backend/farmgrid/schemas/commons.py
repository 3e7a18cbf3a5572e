# backend/farmgrid/schemas/commons.py
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    # JSON は camelCase、Python 側は snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LatLonOut(CamelModel):
    lat: float
    lon: float


class GeoJSONFeature(BaseModel):
    type: Literal["Feature"] = "Feature"
    geometry: dict
    properties: dict


class FeatureCollection(BaseModel):
    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: list[GeoJSONFeature]
