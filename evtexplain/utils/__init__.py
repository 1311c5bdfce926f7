"""
This module contains utilities on which the explainer depends. This includes reference statistics and Gaussian perturbation sampling, distance and kernel computations, weighted least squares fits with feature selection, and batched or multi-core evaluation of black-box predictors.
"""
