"""Shared pytest fixtures for metcv tests."""

import numpy as np
import polars as pl
import pytest
from sklearn.linear_model import LinearRegression

from metcv.core.config import CVConfig, FeatureConfig
from metcv.wrangle.dataset import TrialDataset

LOCATIONS = ["Ames", "Lincoln"]
YEARS = [2019, 2020]
GENOTYPES = [f"G{i}" for i in range(1, 7)]


# Data fixtures - small synthetic MET tables


@pytest.fixture
def environments_df():
    """2 locations x 2 years with coordinates and elevation."""
    rows = {
        "IDenv": [],
        "location": [],
        "year": [],
        "longitude": [],
        "latitude": [],
        "elevation": [],
    }
    for i, loc in enumerate(LOCATIONS):
        for year in YEARS:
            rows["IDenv"].append(f"{loc}_{year}")
            rows["location"].append(loc)
            rows["year"].append(year)
            rows["longitude"].append(-93.6 - 3.1 * i)
            rows["latitude"].append(42.0 + 0.8 * i)
            rows["elevation"].append(290.0 + 60.0 * i)
    return pl.DataFrame(rows)


@pytest.fixture
def records_df(environments_df):
    """Every genotype observed in every environment (24 records)."""
    env_ids = environments_df.get_column("IDenv").to_list()
    geno, env, trait = [], [], []
    for gi, g in enumerate(GENOTYPES):
        for ei, e in enumerate(env_ids):
            geno.append(g)
            env.append(e)
            trait.append(10.0 + gi * 0.5 + ei * 1.5)
    return pl.DataFrame({"geno_ID": geno, "IDenv": env, "yield": trait})


@pytest.fixture
def markers_df():
    """Marker matrix coded 0/1/2, one row per genotype."""
    rng = np.random.default_rng(7)
    values = rng.integers(0, 3, size=(len(GENOTYPES), 4))
    data = {"geno_ID": GENOTYPES}
    for j in range(values.shape[1]):
        data[f"m{j + 1}"] = values[:, j].astype(float).tolist()
    return pl.DataFrame(data)


@pytest.fixture
def covariates_df(environments_df):
    """Three weather covariates per environment."""
    env_ids = environments_df.get_column("IDenv").to_list()
    n = len(env_ids)
    return pl.DataFrame(
        {
            "IDenv": env_ids,
            "tmax": [28.0 + i for i in range(n)],
            "prec": [410.0 - 20.0 * i for i in range(n)],
            "srad": [18.5 + 0.2 * i for i in range(n)],
        }
    )


@pytest.fixture
def met_dataset(records_df, environments_df, markers_df, covariates_df):
    """Scenario dataset: 6 genotypes in 2 locations x 2 years."""
    return TrialDataset(
        records=records_df,
        environments=environments_df,
        trait="yield",
        markers=markers_df,
        env_covariates=covariates_df,
    )


@pytest.fixture
def large_dataset():
    """100 genotypes tested in two environments of one year pair."""
    rng = np.random.default_rng(11)
    genotypes = [f"L{i:03d}" for i in range(100)]
    environments = pl.DataFrame(
        {
            "IDenv": ["Ames_2019", "Ames_2020"],
            "location": ["Ames", "Ames"],
            "year": [2019, 2020],
        }
    )
    geno, env, trait = [], [], []
    for g in genotypes:
        for e in ("Ames_2019", "Ames_2020"):
            geno.append(g)
            env.append(e)
            trait.append(float(rng.normal(10.0, 1.0)))
    records = pl.DataFrame({"geno_ID": geno, "IDenv": env, "yield": trait})
    marker_values = rng.integers(0, 3, size=(100, 5)).astype(float)
    markers = pl.DataFrame(
        {"geno_ID": genotypes, **{f"m{j}": marker_values[:, j] for j in range(5)}}
    )
    return TrialDataset(records, environments, "yield", markers=markers)


@pytest.fixture
def markers_only():
    """Feature toggles for datasets without covariates."""
    return FeatureConfig(include_env_covariates=False)


@pytest.fixture
def linear_backends():
    return {"linear": LinearRegression()}


@pytest.fixture
def cv0_config():
    return CVConfig(cv_type="cv0", model="linear", seed=1)
