from sae_trainer.data.dataset import ArrayDataSet, Example, load_dataset

__all__ = ["ArrayDataSet", "Example", "load_dataset"]
