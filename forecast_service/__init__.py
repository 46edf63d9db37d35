"""
Forecast service for Philippine emigration statistics.

The package is an Azure Functions app (``function_app``) on top of the
``utils`` package, which holds the forecasting pipeline:

* ``categories`` – the closed table of forecastable categories (fields,
  labels, source collections).
* ``dataset`` – normalization, sliding window construction and dataset
  preparation for a year-ordered series.
* ``emigration_lstm`` – the stacked LSTM network (PyTorch Lightning).
* ``trainer`` / ``search`` – single training runs and the k-fold
  hyperparameter search that picks the model to persist.
* ``forecaster`` – iterative multi-step forecasting.
* ``storage`` / ``state`` – model persistence in Blob Storage and the
  staged/active model registry.
* ``cosmos_client`` – reads the aggregated series from Cosmos DB and records
  training runs.
"""
