import torch
import torch.nn as nn
import torch.nn.functional as F
import pytorch_lightning as pl
import logging

logger = logging.getLogger(__name__)

MAX_DROPOUT = 0.8
DEFAULT_UNITS = [50, 50]


def sanitize_units(units):
    """Positive integer widths, one per recurrent layer; empty input gives [50, 50]"""
    parsed = []
    for value in units or []:
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if number != number or number <= 0:
            continue
        parsed.append(max(1, int(round(number))))
    return parsed or list(DEFAULT_UNITS)


def sanitize_dropout(dropout, layer_count, fill=0.0):
    """One rate per layer, clamped to [0, 0.8]; missing entries take ``fill``"""
    rates = []
    for index in range(layer_count):
        try:
            rate = float(dropout[index])
        except (TypeError, ValueError, IndexError):
            rate = fill
        if rate != rate or rate <= 0:
            rates.append(0.0)
        else:
            rates.append(min(rate, MAX_DROPOUT))
    return rates


class EmigrationLSTM(pl.LightningModule):
    """
    Stacked LSTM regressor for yearly emigration counts.

    One LSTM per entry in UNITS; every layer but the last hands its whole
    sequence to the next one, the last keeps only its final state. Each
    layer is optionally followed by dropout, and a linear head maps to one
    raw regression output per field.
    """

    def __init__(self, config):
        """
        Args:
            config: dict or object with FIELDS, LOOKBACK, UNITS, DROPOUT and
                    optionally LEARNING_RATE, WEIGHT_DECAY
        """
        super().__init__()
        self.config = config

        fields = list(self.get_config("FIELDS"))
        units = sanitize_units(self.get_config("UNITS", DEFAULT_UNITS))
        dropout = sanitize_dropout(self.get_config("DROPOUT", []), len(units))

        self.fields = fields
        self.lookback = int(self.get_config("LOOKBACK", 3))
        self.units = units
        self.dropout_rates = dropout

        self.lstm_layers = nn.ModuleList()
        self.dropout_layers = nn.ModuleList()
        input_size = len(fields)
        for unit_count, rate in zip(units, dropout):
            self.lstm_layers.append(nn.LSTM(input_size=input_size, hidden_size=unit_count, batch_first=True))
            self.dropout_layers.append(nn.Dropout(p=rate) if rate > 0 else nn.Identity())
            input_size = unit_count

        self.fc = nn.Linear(in_features=input_size, out_features=len(fields))

        self.save_hyperparameters()

    # Helper for dict or object configs
    def get_config(self, key, default=None):
        return self.config.get(key, default) if isinstance(self.config, dict) else getattr(self.config, key, default)

    def topology(self):
        """JSON-serialisable description needed to rebuild the network"""
        return {
            "class_name": type(self).__name__,
            "fields": list(self.fields),
            "lookback": self.lookback,
            "units": list(self.units),
            "dropout": list(self.dropout_rates),
        }

    @classmethod
    def from_topology(cls, topology, learning_rate=0.001):
        return cls({
            "FIELDS": topology["fields"],
            "LOOKBACK": topology["lookback"],
            "UNITS": topology["units"],
            "DROPOUT": topology.get("dropout", []),
            "LEARNING_RATE": learning_rate,
        })

    def forward(self, x):
        """
        Args:
            x: Tensor (batch_size, lookback, num_fields)

        Returns:
            Tensor (batch_size, num_fields)
        """
        last_index = len(self.lstm_layers) - 1
        for index, (lstm, dropout) in enumerate(zip(self.lstm_layers, self.dropout_layers)):
            x, _ = lstm(x)
            if index == last_index:
                x = x[:, -1, :]
            x = dropout(x)
        return self.fc(x)

    def _shared_step(self, batch, stage):
        inputs, targets = batch
        outputs = self(inputs)
        loss = F.mse_loss(outputs, targets)
        mae = F.l1_loss(outputs, targets)
        self.log(f"{stage}_loss", loss, prog_bar=True, on_epoch=True, on_step=False)
        self.log(f"{stage}_mae", mae, on_epoch=True, on_step=False)
        return loss

    def training_step(self, batch, batch_idx):
        return self._shared_step(batch, "train")

    def validation_step(self, batch, batch_idx):
        return self._shared_step(batch, "val")

    def test_step(self, batch, batch_idx):
        return self._shared_step(batch, "test")

    def predict_step(self, batch, batch_idx):
        inputs, _ = batch
        return self(inputs)

    def configure_optimizers(self):
        return torch.optim.Adam(
            self.parameters(),
            lr=self.get_config("LEARNING_RATE", 0.001),
            weight_decay=self.get_config("WEIGHT_DECAY", 0.0)
        )
